"""
Domain exceptions for the SLTP service.

Services raise these instead of fastapi.HTTPException to avoid coupling
the service layer to the web framework. A global exception handler in
main.py translates any that escape a route into HTTP responses.

Per-tenant errors (CredentialError, ExchangeRejectionError, TransportError)
are normally caught at the dispatch boundary and reported in the tenant's
ExecutionResult instead of reaching the handler.
"""


class AppError(Exception):
    """Base application error with an HTTP-equivalent status code."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(AppError):
    """Malformed or out-of-range trigger (400)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AuthenticationError(ValidationError):
    """Inbound webhook secret missing or wrong (401)."""

    def __init__(self, message: str = "Invalid webhook secret"):
        super().__init__(message)
        self.status_code = 401


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class CredentialError(AppError):
    """Missing or unusable credential for one tenant (422)."""

    def __init__(self, message: str = "No active credential"):
        super().__init__(message, status_code=422)


class ExchangeRejectionError(AppError):
    """Exchange refused the order: balance, lot size, symbol (422)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=422)


class TransportError(AppError):
    """Network failure or timeout talking to an exchange or the orchestrator (503)."""

    def __init__(self, message: str = "Upstream service unavailable"):
        super().__init__(message, status_code=503)


class InternalError(AppError):
    """Vault misconfiguration or ciphertext/key mismatch (500)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=500)
