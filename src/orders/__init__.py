"""Purchase order workflow: lifecycle service, scheduler and bot handlers."""

from orders.service import (
    AccessDeniedError,
    InvalidStateError,
    NotFoundError,
    OrderError,
    OrderService,
    ValidationError,
)

__all__ = [
    "AccessDeniedError",
    "InvalidStateError",
    "NotFoundError",
    "OrderError",
    "OrderService",
    "ValidationError",
]
