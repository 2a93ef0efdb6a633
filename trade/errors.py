"""
Error taxonomy for the order-trade core.

Callers switch on the exception class (or its ``code``), never on the message.
"""
from typing import Any, Iterable, Optional


class TradeError(Exception):
    status_code = 500
    code = "TRADE_ERROR"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.context}


class ValidationError(TradeError):
    status_code = 422
    code = "VALIDATION_ERROR"


class NotFoundError(TradeError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransitionError(TradeError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, current: Any, target: Any, allowed: Iterable[Any]):
        self.entity = entity
        self.current = current
        self.target = target
        self.allowed = sorted(allowed, key=lambda s: int(s))
        super().__init__(
            f"Cannot move {entity} from {_name(current)} to {_name(target)}; "
            f"allowed: {', '.join(_name(s) for s in self.allowed) or 'none'}",
            current=_name(current),
            target=_name(target),
            allowed=[_name(s) for s in self.allowed],
        )


class ConflictError(TradeError):
    status_code = 409
    code = "CONFLICT"


class DatabaseError(TradeError):
    status_code = 503
    code = "DATABASE_ERROR"

    def __init__(self, message: str, retryable: bool = True, cause: Optional[BaseException] = None):
        self.retryable = retryable
        self.cause = cause
        super().__init__(message, retryable=retryable)


def _name(value: Any) -> str:
    return getattr(value, "name", str(value))
