import base64
import logging
import os
import urllib.parse
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

# Load environment variables from .env if present
load_dotenv()

# ------------------------------------------------------------------------------
# Environment configuration
# ------------------------------------------------------------------------------

PORT = int(os.getenv("PORT", "3001"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
JIRA_TIMEOUT_SECONDS = float(os.getenv("JIRA_TIMEOUT_SECONDS", "30"))
JIRA_CLIENT_OPTIONS = {"timeout": JIRA_TIMEOUT_SECONDS, "follow_redirects": True}

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

JIRA_API_PATH = "/rest/api/3"
MAX_RESULTS = 100

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials. Check your email and API token."
NOT_FOUND_MESSAGE = "Jira domain or project not found."
NO_CREATE_PERMISSION_MESSAGE = "No permission to create issues. Contact your Jira admin."

# ------------------------------------------------------------------------------
# App Initialization with CORS and OpenAPI metadata
# ------------------------------------------------------------------------------

openapi_tags = [
    {"name": "Health", "description": "Service status checks"},
    {"name": "Jira", "description": "Relayed Jira Cloud REST calls authenticated with email and API token"},
]

app = FastAPI(
    title="Jira Relay API",
    description=(
        "Stateless relay between a browser client and the Jira Cloud REST API. "
        "Every request carries its own connection config; credentials are used for "
        "the outbound calls of that request only and are never stored."
    ),
    version="0.1.0",
    openapi_tags=openapi_tags,
)

# Local development servers plus https subdomains of the Figma platforms.
ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:8080",
]
ALLOWED_ORIGIN_REGEX = r"https://[^/]+\.figma\.(com|dev|site)"

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=ALLOWED_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------------------------------------------------------------------
# Models
# ------------------------------------------------------------------------------

class JiraConfig(BaseModel):
    """Connection settings supplied by the caller on every request."""
    model_config = ConfigDict(populate_by_name=True)

    domain: str = Field(..., min_length=1, description="Jira site hostname without scheme (e.g., example.atlassian.net)")
    email: str = Field(..., min_length=1, description="Atlassian account email associated with the API token")
    api_token: str = Field(..., min_length=1, alias="apiToken", description="Atlassian API token")
    project_key: Optional[str] = Field(None, alias="projectKey", description="Jira project key (e.g., PROJ)")


class ProjectJiraConfig(JiraConfig):
    """Connection settings for routes scoped to a single project."""
    project_key: str = Field(..., min_length=1, alias="projectKey", description="Jira project key (e.g., PROJ)")


class ProjectRequest(BaseModel):
    """Request body for the validate, users and issues routes."""
    config: ProjectJiraConfig


class EpicRequest(BaseModel):
    """Request body for epic creation."""
    model_config = ConfigDict(populate_by_name=True)

    config: JiraConfig
    epic_data: Dict[str, Any] = Field(..., alias="epicData", description="Jira create-issue payload, forwarded verbatim")


class HealthResponse(BaseModel):
    """Liveness response."""
    status: str = Field(..., description="Always OK while the process is serving")
    message: str = Field(..., description="Human readable status message")


class ValidateResponse(BaseModel):
    """Successful credential and project validation."""
    valid: bool = Field(..., description="Always true on success")
    user: Dict[str, Any] = Field(..., description="Jira /myself response")
    project: Dict[str, Any] = Field(..., description="Jira project response")


class ErrorResponse(BaseModel):
    """Standard error response."""
    valid: Optional[bool] = Field(None, description="Present (false) on the validate route only")
    error: str = Field(..., description="Error message")
    details: Optional[Any] = Field(None, description="Raw upstream error body, when available")


# ------------------------------------------------------------------------------
# Helpers to call the Jira API
# ------------------------------------------------------------------------------

class JiraUpstreamError(Exception):
    """Raised when an outbound Jira call fails.

    status_code and data are None for transport-level failures (DNS,
    connection refused, timeout) where no response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.data = data


def basic_auth_header(email: str, api_token: str) -> str:
    """Return the Authorization header value for Jira API token auth."""
    credentials = f"{email}:{api_token}".encode("utf-8")
    return f"Basic {base64.b64encode(credentials).decode('ascii')}"


def jira_headers(config: JiraConfig) -> Dict[str, str]:
    return {
        "Authorization": basic_auth_header(config.email, config.api_token),
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def upstream_error_message(exc: JiraUpstreamError) -> str:
    """Prefer Jira's first errorMessages entry, else the transport message."""
    if isinstance(exc.data, dict):
        messages = exc.data.get("errorMessages")
        if isinstance(messages, list) and messages:
            return str(messages[0])
    return exc.message


def _decode_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


# PUBLIC_INTERFACE
async def get_jira_http_client() -> AsyncIterator[httpx.AsyncClient]:
    """Dependency providing the outbound HTTP client for one request."""
    async with httpx.AsyncClient(**JIRA_CLIENT_OPTIONS) as client:
        yield client


async def jira_request(
    client: httpx.AsyncClient,
    config: JiraConfig,
    method: str,
    path: str,
    params: Optional[Dict[str, Any]] = None,
    json: Any = None,
) -> Any:
    """
    Perform one authenticated call against https://{domain}/rest/api/3.

    Returns:
        The decoded JSON body of a successful response.

    Raises:
        JiraUpstreamError: on a non-2xx status, an unusable domain or a transport
            failure. Redirects are followed; there is no retry.
    """
    try:
        url = f"https://{config.domain}{JIRA_API_PATH}{path}"
        resp = await client.request(method, url, headers=jira_headers(config), params=params, json=json)
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status_code = exc.response.status_code
        raise JiraUpstreamError(
            f"Request failed with status code {status_code}", status_code, _decode_body(exc.response)
        ) from exc
    except httpx.HTTPError as exc:
        raise JiraUpstreamError(str(exc) or exc.__class__.__name__) from exc
    except (httpx.InvalidURL, ValueError) as exc:
        raise JiraUpstreamError(str(exc) or exc.__class__.__name__) from exc
    return _decode_body(resp)


def _upstream_error_response(exc: JiraUpstreamError, include_details: bool = False) -> JSONResponse:
    content: Dict[str, Any] = {"error": upstream_error_message(exc)}
    if include_details:
        content["details"] = exc.data
    return JSONResponse(
        status_code=exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content,
    )


def _log_upstream_error(context: str, exc: JiraUpstreamError) -> None:
    logger.error(
        "%s: status=%s %s",
        context,
        exc.status_code,
        exc.data if exc.data is not None else exc.message,
    )


# ------------------------------------------------------------------------------
# Error handlers
# ------------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Reject malformed bodies before any outbound call is attempted."""
    # "input" would echo the submitted apiToken back
    errors = jsonable_encoder([{k: v for k, v in err.items() if k != "input"} for err in exc.errors()])
    logger.warning("Invalid request body for %s: %s", request.url.path, errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request body", "details": errors},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


# ------------------------------------------------------------------------------
# Health
# ------------------------------------------------------------------------------

# PUBLIC_INTERFACE
@app.get("/health", tags=["Health"], summary="Health Check", response_model=HealthResponse)
def health_check():
    """
    Health Check endpoint.

    Returns:
        JSON indicating the relay is running.
    """
    return {"status": "OK", "message": "Jira proxy server is running"}


# ------------------------------------------------------------------------------
# Jira Relay Endpoints
# ------------------------------------------------------------------------------

# PUBLIC_INTERFACE
@app.post(
    "/api/jira/validate",
    tags=["Jira"],
    summary="Validate Jira credentials and project access",
    response_model=ValidateResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def validate_connection(body: ProjectRequest, client: httpx.AsyncClient = Depends(get_jira_http_client)):
    """
    Validate credentials and the caller's ability to create issues in a project.

    Runs three lookups in order, stopping at the first failure:
    the current user, the project, and the project's create metadata.
    Valid credentials without any creatable project yield 403.

    Returns:
        valid, user and project on success; valid=false and error otherwise.
    """
    config = body.config
    project_key = urllib.parse.quote(config.project_key, safe="")
    try:
        user = await jira_request(client, config, "GET", "/myself")
        project = await jira_request(client, config, "GET", f"/project/{project_key}")
        create_meta = await jira_request(
            client, config, "GET", "/issue/createmeta", params={"projectKeys": config.project_key}
        )
    except JiraUpstreamError as exc:
        _log_upstream_error("Jira validation error", exc)
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"valid": False, "error": INVALID_CREDENTIALS_MESSAGE},
            )
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"valid": False, "error": NOT_FOUND_MESSAGE},
            )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"valid": False, "error": upstream_error_message(exc)},
        )

    projects = create_meta.get("projects") if isinstance(create_meta, dict) else None
    if not projects:
        logger.warning("Jira user cannot create issues in project %s", config.project_key)
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"valid": False, "error": NO_CREATE_PERMISSION_MESSAGE},
        )

    return {"valid": True, "user": user, "project": project}


# PUBLIC_INTERFACE
@app.post(
    "/api/jira/users",
    tags=["Jira"],
    summary="List users assignable to a project",
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def list_assignable_users(body: ProjectRequest, client: httpx.AsyncClient = Depends(get_jira_http_client)):
    """
    List users assignable to the project (at most 100).

    Returns:
        The Jira user list, unchanged.
    """
    config = body.config
    try:
        return await jira_request(
            client,
            config,
            "GET",
            "/user/assignable/search",
            params={"project": config.project_key, "maxResults": MAX_RESULTS},
        )
    except JiraUpstreamError as exc:
        _log_upstream_error("Error fetching Jira users", exc)
        return _upstream_error_response(exc)


# PUBLIC_INTERFACE
@app.post(
    "/api/jira/epic",
    tags=["Jira"],
    summary="Create an epic",
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def create_epic(body: EpicRequest, client: httpx.AsyncClient = Depends(get_jira_http_client)):
    """
    Create an issue from the caller's epicData payload.

    Body:
        config: domain, email and apiToken
        epicData: Jira create-issue payload, sent as is

    Returns:
        The Jira created-issue body (id, key, self), unchanged. Failures carry
        the raw Jira error body under details.
    """
    try:
        created = await jira_request(client, body.config, "POST", "/issue", json=body.epic_data)
    except JiraUpstreamError as exc:
        _log_upstream_error("Error creating Jira Epic", exc)
        return _upstream_error_response(exc, include_details=True)

    logger.info("Jira Epic created: %s", created.get("key") if isinstance(created, dict) else None)
    return created


# PUBLIC_INTERFACE
@app.post(
    "/api/jira/issues",
    tags=["Jira"],
    summary="List epics in a project",
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def list_epics(body: ProjectRequest, client: httpx.AsyncClient = Depends(get_jira_http_client)):
    """
    Search the project's Epic issues (at most 100).

    Returns:
        The Jira search result, unchanged.
    """
    config = body.config
    try:
        return await jira_request(
            client,
            config,
            "GET",
            "/search",
            params={"jql": f"project={config.project_key} AND issuetype=Epic", "maxResults": MAX_RESULTS},
        )
    except JiraUpstreamError as exc:
        _log_upstream_error("Error fetching Jira issues", exc)
        return _upstream_error_response(exc)


# ------------------------------------------------------------------------------
# Entrypoint
# ------------------------------------------------------------------------------

# PUBLIC_INTERFACE
def run():
    """Serve the relay with uvicorn on PORT."""
    import uvicorn

    logger.info("Jira relay running on http://localhost:%s", PORT)
    logger.info("Health check: http://localhost:%s/health", PORT)
    uvicorn.run(app, host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    run()
