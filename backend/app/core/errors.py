from typing import Any


class SocialIntegrationError(Exception):
    """Base for every failure that may cross the HTTP boundary.

    Subclasses pin the taxonomy code, the HTTP status used when the error is
    rendered, and whether the operation may be retried automatically.
    """

    error_code: str = "social_integration_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SocialIntegrationError):
    error_code = "validation_error"
    status_code = 422


class AuthenticationError(SocialIntegrationError):
    error_code = "authentication_error"
    status_code = 401


class OwnershipError(SocialIntegrationError):
    error_code = "ownership_error"
    status_code = 403


class NotFoundError(SocialIntegrationError):
    error_code = "not_found"
    status_code = 404


class MalformedStateError(SocialIntegrationError):
    error_code = "malformed_state"
    status_code = 400


class UnsupportedPlatformError(SocialIntegrationError):
    error_code = "unsupported_platform"
    status_code = 400


class MissingConfigurationError(SocialIntegrationError):
    error_code = "missing_configuration"
    status_code = 500


class ProviderTokenError(SocialIntegrationError):
    error_code = "provider_token_error"
    status_code = 502


class ProviderIdentityError(SocialIntegrationError):
    error_code = "provider_identity_error"
    status_code = 502


class ProviderPublishError(SocialIntegrationError):
    error_code = "provider_publish_error"
    status_code = 502


class RefreshUnsupportedError(SocialIntegrationError):
    error_code = "reconnect_required"
    status_code = 409


class RefreshFailedError(SocialIntegrationError):
    error_code = "refresh_failed"
    status_code = 502


class NetworkError(SocialIntegrationError):
    error_code = "network_error"
    status_code = 503
    retryable = True


class ReadinessTimeoutError(SocialIntegrationError):
    error_code = "readiness_timeout"
    status_code = 504


class PublishCancelledError(SocialIntegrationError):
    error_code = "publish_cancelled"
    status_code = 409


ERROR_CLASSES_BY_CODE: dict[str, type[SocialIntegrationError]] = {
    error_cls.error_code: error_cls
    for error_cls in (
        ValidationError,
        AuthenticationError,
        OwnershipError,
        NotFoundError,
        MalformedStateError,
        UnsupportedPlatformError,
        MissingConfigurationError,
        ProviderTokenError,
        ProviderIdentityError,
        ProviderPublishError,
        RefreshUnsupportedError,
        RefreshFailedError,
        NetworkError,
        ReadinessTimeoutError,
        PublishCancelledError,
    )
}


def status_code_for(error_code: str | None) -> int:
    error_cls = ERROR_CLASSES_BY_CODE.get(error_code or "")
    return error_cls.status_code if error_cls is not None else 500
