from .maintenance import router as maintenance_router
from .records import router as records_router
from .search import router as search_router

__all__ = ["records_router", "search_router", "maintenance_router"]
