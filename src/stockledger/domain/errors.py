class AppError(Exception):
    """Base app error."""

    category = "internal"


class ValidationError(AppError):
    category = "validation"


class NotFoundError(AppError):
    category = "not_found"


class InsufficientStockError(ValidationError):
    pass


class ConflictError(AppError):
    category = "conflict"


class DuplicateCodeError(ConflictError):
    pass


class InvalidTransitionError(ConflictError):
    pass


class StaleSnapshotError(ConflictError):
    pass


class StoreBusyError(ConflictError):
    pass


class InternalError(AppError):
    pass


def error_category(exc: BaseException) -> str:
    """Map any exception onto validation / conflict / not_found / internal."""
    if isinstance(exc, AppError):
        return exc.category
    return "internal"
