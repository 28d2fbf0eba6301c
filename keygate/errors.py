"""Error Handling - Gateway error kinds, exceptions and the HTTP rendering table."""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Every failure the gateway can report to a caller."""

    # Admission (AUTH-*)
    MISSING_KEY = "missing_key"
    INVALID_KEY = "invalid_key"
    QUOTA_EXCEEDED = "quota_exceeded"

    # Admin gate (ADM-*)
    ADMIN_KEY_REQUIRED = "admin_key_required"
    ACCESS_DENIED = "access_denied"

    # Admin operations
    VALIDATION_ERROR = "validation_error"
    DUPLICATE_KEY = "duplicate_key"
    NOT_FOUND = "not_found"

    # Persistence (ST-*)
    STORE_IO_ERROR = "store_io_error"
    STORE_CORRUPT = "store_corrupt"

    INTERNAL = "internal"


ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.MISSING_KEY: 401,
    ErrorKind.INVALID_KEY: 401,
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.ADMIN_KEY_REQUIRED: 401,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.DUPLICATE_KEY: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STORE_IO_ERROR: 500,
    ErrorKind.STORE_CORRUPT: 500,
    ErrorKind.INTERNAL: 500,
}

_unmapped = set(ErrorKind) - set(ERROR_STATUS)
if _unmapped:
    raise RuntimeError(f"Error kinds without an HTTP status: {sorted(k.value for k in _unmapped)}")


class GatewayError(Exception):
    """Base exception for keygate."""

    kind: ErrorKind = ErrorKind.INTERNAL
    default_message: str = "Erro interno do servidor"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        self.message = message or self.default_message
        self.details = details or {}
        self.cause = cause
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_STATUS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, **self.details}


class MissingKeyError(GatewayError):
    kind = ErrorKind.MISSING_KEY
    default_message = "API Key não fornecida"

    def __init__(self, message: Optional[str] = None, **kwargs):
        kwargs.setdefault(
            "details",
            {"message": "Adicione 'apikey' nos query parameters ou no header 'x-api-key'"},
        )
        super().__init__(message, **kwargs)


class InvalidKeyError(GatewayError):
    """Unknown, expired and inactive keys all surface as this one error."""

    kind = ErrorKind.INVALID_KEY
    default_message = "API Key inválida ou expirada"


class QuotaExceededError(GatewayError):
    kind = ErrorKind.QUOTA_EXCEEDED
    default_message = "Limite de uso excedido"

    def __init__(self, limit: int, used: int, message: Optional[str] = None):
        self.limit = limit
        self.used = used
        super().__init__(
            message,
            details={"limit": limit, "used": used, "reset": "Contate o administrador para reset"},
        )


class AdminKeyRequiredError(GatewayError):
    kind = ErrorKind.ADMIN_KEY_REQUIRED
    default_message = "API Key administrativa necessária"


class AccessDeniedError(GatewayError):
    kind = ErrorKind.ACCESS_DENIED
    default_message = "Acesso negado. API Key administrativa requerida."


class ValidationError(GatewayError):
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "Dados inválidos"


class DuplicateKeyError(GatewayError):
    kind = ErrorKind.DUPLICATE_KEY
    default_message = "API Key já existe"


class NotFoundError(GatewayError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Key não encontrada"


class StoreIOError(GatewayError):
    """Backing storage could not be read or written."""

    kind = ErrorKind.STORE_IO_ERROR
    default_message = "Armazenamento de API keys indisponível"


class StoreCorruptError(StoreIOError):
    """Backing storage was readable but did not hold a credential list."""

    kind = ErrorKind.STORE_CORRUPT
    default_message = "Armazenamento de API keys corrompido"


class InternalError(GatewayError):
    kind = ErrorKind.INTERNAL


def render_error(exc: BaseException) -> Tuple[int, Dict[str, Any]]:
    """Map any exception to an HTTP status and a JSON-safe body.

    Gateway errors keep their message and details; anything else becomes a
    generic 500 so internal detail never reaches the caller.
    """
    if isinstance(exc, GatewayError):
        return exc.status_code, exc.to_dict()
    logger.error("Unhandled error: %s", exc, exc_info=exc)
    fallback = InternalError()
    return fallback.status_code, fallback.to_dict()
