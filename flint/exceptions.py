"""Custom exceptions for the Flint application."""

from enum import Enum


class FlintError(Exception):
    """Base exception for Flint."""

    pass


class NotFoundError(FlintError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource_type: str, resource_id: int | str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} with id {resource_id} not found")


class SyncError(FlintError):
    """Raised when a sync operation fails."""

    def __init__(self, message: str, original_error: Exception | None = None):
        self.original_error = original_error
        super().__init__(message)


class ValidationError(FlintError):
    """Raised when validation fails."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class ConfigurationError(FlintError):
    """Raised when there's a configuration issue."""

    pass


class CredentialError(FlintError):
    """Raised when a stored provider credential is missing or unreadable."""

    def __init__(self, message: str, local_user_id: str | None = None):
        self.local_user_id = local_user_id
        super().__init__(message)


class ErrorCode(str, Enum):
    """Normalized provider failure codes surfaced to callers."""

    RATE_LIMITED = "RATE_LIMITED"
    AUTH_INVALID = "AUTH_INVALID"
    CONNECTION_DISABLED = "CONNECTION_DISABLED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    ENROLLMENT_DISCONNECTED = "ENROLLMENT_DISCONNECTED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    MFA_REQUIRED = "MFA_REQUIRED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    UNKNOWN = "UNKNOWN"


RETRYABLE_CODES = frozenset({ErrorCode.RATE_LIMITED, ErrorCode.PROVIDER_UNAVAILABLE})


class ProviderError(FlintError):
    """
    Raised when an external provider call fails.

    Carries the normalized code plus whatever correlation data is available
    so support can line a failure up with the provider's own logs.
    """

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        provider: str,
        *,
        status_code: int | None = None,
        provider_code: str | None = None,
        correlation_id: str | None = None,
        provider_request_id: str | None = None,
        retry_after: float | None = None,
        response_body: object | None = None,
    ):
        self.provider = provider
        self.status_code = status_code
        self.provider_code = provider_code
        self.correlation_id = correlation_id
        self.provider_request_id = provider_request_id
        self.retry_after = retry_after
        self.response_body = response_body
        super().__init__(f"{provider}: {message}")

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict[str, str | int | None]:
        return {
            "code": self.code.value,
            "message": str(self),
            "provider": self.provider,
            "status_code": self.status_code,
            "correlation_id": self.correlation_id,
            "provider_request_id": self.provider_request_id,
        }


class RateLimitedError(ProviderError):
    code = ErrorCode.RATE_LIMITED


class AuthInvalidError(ProviderError):
    code = ErrorCode.AUTH_INVALID


class ConnectionDisabledError(ProviderError):
    code = ErrorCode.CONNECTION_DISABLED


class UserNotFoundError(ProviderError):
    code = ErrorCode.USER_NOT_FOUND


class EnrollmentDisconnectedError(ProviderError):
    code = ErrorCode.ENROLLMENT_DISCONNECTED


class ProviderValidationError(ProviderError):
    code = ErrorCode.VALIDATION_ERROR


class ProviderUnavailableError(ProviderError):
    code = ErrorCode.PROVIDER_UNAVAILABLE


class AlreadyRegisteredError(ProviderError):
    code = ErrorCode.ALREADY_REGISTERED


class ResourceNotFoundError(ProviderError):
    """An account, authorization or other non-user resource is gone."""

    code = ErrorCode.RESOURCE_NOT_FOUND


class OrderNotFoundError(ProviderError):
    code = ErrorCode.ORDER_NOT_FOUND


class MFARequiredError(ProviderError):
    """Raised when the provider needs the end user to complete an MFA step."""

    code = ErrorCode.MFA_REQUIRED

    def __init__(self, message: str, provider: str, *, continuation_token: str | None = None, **kwargs):
        self.continuation_token = continuation_token
        super().__init__(message, provider, **kwargs)


ERROR_CLASSES: dict[ErrorCode, type[ProviderError]] = {
    ErrorCode.RATE_LIMITED: RateLimitedError,
    ErrorCode.AUTH_INVALID: AuthInvalidError,
    ErrorCode.CONNECTION_DISABLED: ConnectionDisabledError,
    ErrorCode.USER_NOT_FOUND: UserNotFoundError,
    ErrorCode.ENROLLMENT_DISCONNECTED: EnrollmentDisconnectedError,
    ErrorCode.VALIDATION_ERROR: ProviderValidationError,
    ErrorCode.PROVIDER_UNAVAILABLE: ProviderUnavailableError,
    ErrorCode.MFA_REQUIRED: MFARequiredError,
    ErrorCode.ALREADY_REGISTERED: AlreadyRegisteredError,
    ErrorCode.ORDER_NOT_FOUND: OrderNotFoundError,
    ErrorCode.RESOURCE_NOT_FOUND: ResourceNotFoundError,
    ErrorCode.UNKNOWN: ProviderError,
}

# Failures that mean the remote identity itself is gone and can be re-registered
RECOVERABLE_ERRORS = (UserNotFoundError, EnrollmentDisconnectedError)
