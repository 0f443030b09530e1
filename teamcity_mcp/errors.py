"""
TeamCity error types

Every failure raised by the client or a manager is a TeamCityError subclass, so
tool functions can catch one type and turn it into a structured error envelope
for the agent.
"""

from typing import Any, Dict, List, Optional

import requests


class TeamCityError(Exception):
    """Base class for all TeamCity errors."""

    code = "TEAMCITY_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.details:
            data["details"] = self.details
        return data


class TeamCityAuthenticationError(TeamCityError):
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Authentication failed. Please check your TeamCity token.", **kwargs):
        kwargs.setdefault("status_code", 401)
        super().__init__(message, **kwargs)


class TeamCityAuthorizationError(TeamCityError):
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Insufficient permissions for this operation.", **kwargs):
        kwargs.setdefault("status_code", 403)
        super().__init__(message, **kwargs)


class PermissionDeniedError(TeamCityAuthorizationError):
    code = "PERMISSION_DENIED"

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, details={"operation": operation} if operation else None)
        self.operation = operation


class TeamCityNotFoundError(TeamCityError):
    code = "NOT_FOUND"
    resource = "Resource"

    def __init__(self, identifier: str, resource: Optional[str] = None, message: Optional[str] = None):
        resource = resource or self.resource
        super().__init__(
            message or f"{resource} with identifier '{identifier}' not found",
            status_code=404,
            details={"resource": resource, "identifier": identifier},
        )
        self.identifier = identifier


class BuildNotFoundError(TeamCityNotFoundError):
    resource = "Build"


class BuildConfigurationNotFoundError(TeamCityNotFoundError):
    resource = "Build configuration"


class ProjectNotFoundError(TeamCityNotFoundError):
    resource = "Project"


class TriggerNotFoundError(TeamCityNotFoundError):
    resource = "Trigger"


class DependencyNotFoundError(TeamCityNotFoundError):
    resource = "Dependency"


class ArtifactNotFoundError(TeamCityNotFoundError):
    resource = "Artifact"


class VcsRootNotFoundError(TeamCityNotFoundError):
    resource = "VCS root"


class ParameterNotFoundError(TeamCityNotFoundError):
    resource = "Parameter"


class TeamCityValidationError(TeamCityError):
    """Server-side (HTTP 400) or aggregated local validation failure."""

    code = "VALIDATION_ERROR"

    def __init__(self, validation_errors: List[Dict[str, str]], message: Optional[str] = None):
        summary = ", ".join(f"{e.get('field', 'request')}: {e.get('message', '')}" for e in validation_errors)
        super().__init__(
            message or f"Validation failed: {summary}",
            status_code=400,
            details={"validation_errors": validation_errors},
        )
        self.validation_errors = validation_errors


class ValidationError(TeamCityError):
    """A single invalid input, detected before any request is made."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, details=details)
        self.field = field


class CircularDependencyError(ValidationError):
    code = "CIRCULAR_DEPENDENCY"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, field="dependency", details=details)


class TeamCityRateLimitError(TeamCityError):
    code = "RATE_LIMIT_ERROR"

    def __init__(self, retry_after: Optional[int] = None):
        message = "Rate limit exceeded"
        if retry_after:
            message += f". Retry after {retry_after} seconds"
        super().__init__(message, status_code=429, details={"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after


class TeamCityServerError(TeamCityError):
    code = "SERVER_ERROR"

    def __init__(self, message: str = "TeamCity server error", status_code: int = 500):
        super().__init__(message, status_code=status_code)


class TeamCityNetworkError(TeamCityError):
    code = "NETWORK_ERROR"


class TeamCityTimeoutError(TeamCityError):
    code = "TIMEOUT_ERROR"

    def __init__(self, timeout: float):
        super().__init__(f"Request timed out after {int(timeout * 1000)}ms", details={"timeout": timeout})
        self.timeout = timeout


class TeamCityResponseError(TeamCityError):
    """The server answered, but with a payload of an unexpected shape."""

    code = "INVALID_RESPONSE"


def _response_message(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text.splitlines()[0] if text else None
    if isinstance(body, dict):
        for key in ("message", "error", "details"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return None


def error_from_response(response: requests.Response) -> TeamCityError:
    """Map a failed HTTP response to the matching TeamCityError."""
    status = response.status_code
    message = _response_message(response)

    if status == 401:
        return TeamCityAuthenticationError(message or "Authentication failed. Please check your TeamCity token.")
    if status == 403:
        return TeamCityAuthorizationError(message or "Insufficient permissions for this operation.")
    if status == 404:
        return TeamCityNotFoundError(response.url or "", message=message or f"Resource not found: {response.url}")
    if status == 400:
        return TeamCityValidationError([{"field": "request", "message": message or "Bad request"}])
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        return TeamCityRateLimitError(int(retry_after) if retry_after and retry_after.isdigit() else None)
    if status >= 500:
        return TeamCityServerError(message or f"TeamCity server error ({status})", status_code=status)
    return TeamCityError(message or f"Unexpected HTTP status {status}", code="HTTP_ERROR", status_code=status)


def is_retryable(error: Exception) -> bool:
    if isinstance(error, (TeamCityNetworkError, TeamCityTimeoutError, TeamCityServerError, TeamCityRateLimitError)):
        return True
    return isinstance(error, TeamCityError) and error.status_code == 503


def format_error(error: Exception) -> Dict[str, Any]:
    """Build the error envelope returned by tools."""
    if isinstance(error, TeamCityError):
        payload = {"code": error.code, "message": error.message}
        data = dict(error.details)
        if error.status_code is not None:
            data["status_code"] = error.status_code
        if is_retryable(error):
            data["retryable"] = True
        if data:
            payload["data"] = data
    else:
        payload = {"code": "INTERNAL_ERROR", "message": str(error) or error.__class__.__name__}
    return {"success": False, "error": payload}
