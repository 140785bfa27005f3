"""
Service-level errors.

Raised by the service modules and turned into JSON responses by the handler
registered in app.main, using the same {"detail": ...} shape as HTTPException.
"""
from starlette import status


class ServiceError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientInputError(ServiceError):
    """Bad or missing input, unsupported provider, amount below the provider minimum."""
    status_code = status.HTTP_400_BAD_REQUEST


class ProviderError(ServiceError):
    """Upstream checkout creation failed; message carries the provider's detail."""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
