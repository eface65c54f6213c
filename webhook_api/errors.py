class IngestError(Exception):
    """Base error carrying the HTTP status and webhook result tag it maps to."""

    status_code = 500
    result = "error"
    default_detail = "internal server error"

    def __init__(self, detail=None) -> None:
        self.detail = detail if detail is not None else self.default_detail
        super().__init__(self.detail if isinstance(self.detail, str) else self.default_detail)


class ConfigurationError(IngestError):
    status_code = 503
    result = "secret_missing"
    default_detail = "service not ready"


class AuthenticationError(IngestError):
    status_code = 401
    result = "invalid_signature"
    default_detail = "invalid signature"


class ValidationError(IngestError):
    status_code = 422
    result = "validation_error"
    default_detail = "validation error"


class StorageUnavailable(IngestError):
    status_code = 500
    result = "error"
    default_detail = "internal server error"


class InternalError(IngestError):
    status_code = 500
    result = "error"
    default_detail = "internal server error"
