from .system import router as system_router  # noqa: F401
from .monitoring import router as monitoring_router  # noqa: F401

__all__ = ["system_router", "monitoring_router"]
