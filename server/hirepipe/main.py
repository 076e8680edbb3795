import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import load_settings
from .core.services.rate_limiter import close_rate_limiter, init_rate_limiter
from .database import close_pool, init_db, init_pool
from .services.errors import PipelineError

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings = load_settings()
    print(f"[Hirepipe] Starting server on port {settings.port}")

    # Initialize database
    await init_pool(settings.database_url)
    await init_db()

    # Redis-backed command rate limits
    await init_rate_limiter(settings.redis_url)
    print(f"[Hirepipe] Rate limiter connected to {settings.redis_url}")

    yield

    # Cleanup
    await close_rate_limiter()
    await close_pool()
    print("[Hirepipe] Server shutdown complete")


app = FastAPI(
    title="Hirepipe API",
    description="Hiring pipeline and placement fee service",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - allow frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.warning("[Hirepipe] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Import and include routers
from .routes import (
    admin_router,
    applications_router,
    candidates_router,
    cron_router,
    interviews_router,
    introductions_router,
    offers_router,
    placements_router,
)

app.include_router(applications_router, prefix="/api/applications", tags=["applications"])
app.include_router(admin_router, prefix="/api/admin", tags=["admin"])
app.include_router(interviews_router, prefix="/api/interviews", tags=["interviews"])
app.include_router(introductions_router, prefix="/api/introductions", tags=["introductions"])
app.include_router(offers_router, prefix="/api/offers", tags=["offers"])
app.include_router(placements_router, prefix="/api/placements", tags=["placements"])
app.include_router(candidates_router, prefix="/api/employer", tags=["candidates"])
app.include_router(cron_router, prefix="/api/cron", tags=["cron"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "hirepipe"}
