"""
API routers initialization
"""
from .health import router as health_router
from .research import router as research_router
from .status import router as status_router
from .templates import router as templates_router

__all__ = ["health_router", "research_router", "status_router", "templates_router"]
