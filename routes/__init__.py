from .payments import router as payments_router
from .reconciliations import router as reconciliations_router

__all__ = [
    "payments_router",
    "reconciliations_router",
]
