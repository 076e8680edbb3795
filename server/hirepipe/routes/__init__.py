from .admin import router as admin_router
from .applications import router as applications_router
from .candidates import router as candidates_router
from .cron import router as cron_router
from .interviews import router as interviews_router
from .introductions import router as introductions_router
from .offers import router as offers_router
from .placements import router as placements_router

__all__ = [
    "admin_router",
    "applications_router",
    "candidates_router",
    "cron_router",
    "interviews_router",
    "introductions_router",
    "offers_router",
    "placements_router",
]
