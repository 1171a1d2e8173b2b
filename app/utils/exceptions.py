class AuthorizationError(Exception):
    """Base exception for the authorization engine"""
    code = "INTERNAL"
    status_code = 500

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

class InvalidInputError(AuthorizationError):
    code = "INVALID_INPUT"
    status_code = 400

class NotAuthenticatedError(AuthorizationError):
    code = "UNAUTHENTICATED"
    status_code = 401

class NotFoundError(AuthorizationError):
    code = "NOT_FOUND"
    status_code = 404

class PermissionDeniedError(AuthorizationError):
    code = "PERMISSION_DENIED"
    status_code = 403

class ServiceUnavailableError(AuthorizationError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503

class InternalError(AuthorizationError):
    code = "INTERNAL"
    status_code = 500

class CacheStoreError(Exception):
    """Cache layer failure; always recovered by the caller"""
    pass
