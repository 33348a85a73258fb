"""Error taxonomy shared by the providers, the artifact store and the API layer."""


class SongProxyError(Exception):
    """Base exception for songproxy errors.

    ``status_code`` is the HTTP status the API layer answers with when the error
    reaches a request handler.
    """

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SongProxyError):
    """Request shape is invalid or a mode-required field is missing."""

    status_code = 400


class UnauthorizedError(SongProxyError):
    """Shared-secret client key missing or wrong."""

    status_code = 401


class SSRFRejection(SongProxyError):
    """Download URL points outside the allowed provider hosts."""

    status_code = 400


class ProviderError(SongProxyError):
    """Base exception for upstream provider errors."""

    status_code = 502


class ProviderConfigurationError(ProviderError):
    """Provider credentials are not configured on this server."""

    status_code = 503


class ProviderTransportError(ProviderError):
    """Upstream unreachable, timed out or answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        super().__init__(message)
        self.upstream_status = status_code
        self.detail = detail

    @property
    def is_transient(self) -> bool:
        """Connection failures, timeouts, 429 and 5xx are worth another poll."""
        if self.upstream_status is None:
            return True
        return self.upstream_status == 429 or self.upstream_status >= 500


class ProviderResponseError(ProviderError):
    """Upstream answered 2xx but the body is missing what we need."""


class ProviderBusinessError(ProviderError):
    """Upstream explicitly reported that the generation failed."""


class PersistenceError(SongProxyError):
    """Local artifact write failed."""

    status_code = 500


class ArtifactNotFoundError(SongProxyError):
    status_code = 404


class TaskTimeoutError(SongProxyError):
    """Polling attempts exhausted without a terminal provider state."""

    status_code = 504


class InvalidTransitionError(SongProxyError):
    """A task was asked to leave a terminal state."""
