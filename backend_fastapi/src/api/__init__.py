"""
API package for the FastAPI relay between browser clients and the Jira Cloud REST API.

This module exposes the application under src.api.main and serves as the package
initializer to ensure proper import paths for tooling like OpenAPI generation.
"""
