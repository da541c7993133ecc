from dataclasses import dataclass
from fastapi import status


@dataclass(frozen=True)
class ErrorDefinition:
    code: str
    message: str
    status_code: int


class ErrorCatalog:
    INVALID_TOKEN = ErrorDefinition("INVALID_TOKEN", "Invalid token", status.HTTP_401_UNAUTHORIZED)
    INVALID_CREDENTIALS = ErrorDefinition(
        "INVALID_CREDENTIALS",
        "Invalid credentials",
        status.HTTP_401_UNAUTHORIZED,
    )
    USER_INACTIVE = ErrorDefinition(
        "USER_INACTIVE",
        "User is inactive",
        status.HTTP_403_FORBIDDEN,
    )
    PERMISSION_DENIED = ErrorDefinition(
        "PERMISSION_DENIED",
        "Not authorized",
        status.HTTP_403_FORBIDDEN,
    )
    TENANT_SCOPE_REQUIRED = ErrorDefinition(
        "TENANT_SCOPE_REQUIRED",
        "Tenant scope is required",
        status.HTTP_403_FORBIDDEN,
    )
    NOT_FOUND = ErrorDefinition(
        "NOT_FOUND",
        "Resource not found",
        status.HTTP_404_NOT_FOUND,
    )
    CONFLICT = ErrorDefinition(
        "CONFLICT",
        "Request conflicts with the current state",
        status.HTTP_409_CONFLICT,
    )
    CONCURRENT_MODIFICATION = ErrorDefinition(
        "CONCURRENT_MODIFICATION",
        "Resource was modified concurrently, retry the request",
        status.HTTP_409_CONFLICT,
    )
    EXCEEDS_APPROVED_QUANTITY = ErrorDefinition(
        "EXCEEDS_APPROVED_QUANTITY",
        "Shipment exceeds approved quantity",
        status.HTTP_409_CONFLICT,
    )
    EXCEEDS_SHIPPED_QUANTITY = ErrorDefinition(
        "EXCEEDS_SHIPPED_QUANTITY",
        "Receipt exceeds shipped quantity",
        status.HTTP_409_CONFLICT,
    )
    PREVIOUS_LEVELS_INCOMPLETE = ErrorDefinition(
        "PREVIOUS_LEVELS_INCOMPLETE",
        "Previous approval levels must be completed first",
        status.HTTP_409_CONFLICT,
    )
    INSUFFICIENT_STOCK = ErrorDefinition(
        "INSUFFICIENT_STOCK",
        "Insufficient stock to fulfill request",
        status.HTTP_409_CONFLICT,
    )
    DB_UNAVAILABLE = ErrorDefinition(
        "DB_UNAVAILABLE",
        "Database unavailable",
        status.HTTP_503_SERVICE_UNAVAILABLE,
    )
    LOCK_TIMEOUT = ErrorDefinition(
        "LOCK_TIMEOUT",
        "Lock wait timeout",
        status.HTTP_409_CONFLICT,
    )
    VALIDATION_ERROR = ErrorDefinition(
        "VALIDATION_ERROR",
        "Validation error",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    INTERNAL_ERROR = ErrorDefinition(
        "INTERNAL_ERROR",
        "Internal server error",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    IDEMPOTENCY_KEY_REQUIRED = ErrorDefinition(
        "IDEMPOTENCY_KEY_REQUIRED",
        "Idempotency key required",
        status.HTTP_400_BAD_REQUEST,
    )
    IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD = ErrorDefinition(
        "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD",
        "Idempotency key reused with different payload",
        status.HTTP_409_CONFLICT,
    )
    IDEMPOTENCY_REQUEST_IN_PROGRESS = ErrorDefinition(
        "IDEMPOTENCY_REQUEST_IN_PROGRESS",
        "Idempotency request already in progress",
        status.HTTP_409_CONFLICT,
    )
    IDEMPOTENCY_REPLAY = ErrorDefinition(
        "IDEMPOTENCY_REPLAY",
        "Idempotent replay",
        status.HTTP_200_OK,
    )


class AppError(Exception):
    def __init__(self, error: ErrorDefinition, details: object | None = None):
        self.error = error
        self.details = details
        super().__init__(error.message)


def validation_error(message: str, **fields) -> AppError:
    return AppError(ErrorCatalog.VALIDATION_ERROR, details={"message": message, **fields})


def not_found(message: str, **fields) -> AppError:
    return AppError(ErrorCatalog.NOT_FOUND, details={"message": message, **fields})


def conflict(message: str, **fields) -> AppError:
    return AppError(ErrorCatalog.CONFLICT, details={"message": message, **fields})
