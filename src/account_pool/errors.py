"""
Error taxonomy shared by the lease API, budget checker and reset pipeline.

Every error carries an HTTP status and a machine-readable code so handlers
can turn it into a response body without inspecting the type.
"""

from typing import Any, Optional


class AccountPoolError(Exception):
    """Base class for all account-pool errors."""

    http_code = 500
    code = "ServerError"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_response(self) -> dict[str, Any]:
        return {
            "statusCode": self.http_code,
            "body": {"error": {"code": self.code, "message": self.public_message}},
        }

    @property
    def public_message(self) -> str:
        return self.message


class ClientRequestError(AccountPoolError):
    http_code = 400
    code = "ClientError"


class ValidationError(AccountPoolError):
    """Request or record failed validation."""

    http_code = 400
    code = "RequestValidationError"

    def __init__(self, resource: str, detail: Any, cause: Optional[BaseException] = None):
        super().__init__(f"{resource} validation error: {detail}", cause)
        self.resource = resource
        self.detail = str(detail)


class NotFoundError(AccountPoolError):
    http_code = 404
    code = "NotFoundError"

    def __init__(self, resource: str, name: str, cause: Optional[BaseException] = None):
        super().__init__(f'{resource} "{name}" not found', cause)


class AlreadyExistsError(AccountPoolError):
    http_code = 409
    code = "AlreadyExistsError"

    def __init__(self, resource: str, name: str, cause: Optional[BaseException] = None):
        super().__init__(f'{resource} "{name}" already exists', cause)


class ConflictError(AccountPoolError):
    http_code = 409
    code = "ConflictError"

    def __init__(self, resource: str, name: str, detail: Any, cause: Optional[BaseException] = None):
        super().__init__(f'operation cannot be fulfilled on {resource} "{name}": {detail}', cause)


class StatusTransitionError(ConflictError):
    """A conditional status write found a different previous status."""

    def __init__(self, resource: str, name: str, prev_status: str, next_status: str):
        super().__init__(
            resource,
            name,
            f'unable to update {resource} status from "{prev_status}" to "{next_status}": '
            f'no {resource} exists with Status="{prev_status}"',
        )
        self.prev_status = prev_status
        self.next_status = next_status


class InternalServerError(AccountPoolError):
    """Unexpected failure. Details are logged, callers see a generic message."""

    http_code = 500
    code = "ServerError"

    @property
    def public_message(self) -> str:
        return "Internal Server Error"


class MultiError(AccountPoolError):
    """Several independent failures collected into one."""

    def __init__(self, message: str, errors: list[BaseException]):
        self.errors = list(errors)
        detail = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{message}: {detail}" if detail else message)


class NukeTimeoutError(AccountPoolError):
    code = "NukeTimeout"


class ConfigError(AccountPoolError):
    code = "ConfigError"
