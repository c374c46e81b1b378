from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from app.api.routes import jobs, searches
from app.config import settings
from app.models.errors import ProspectorError
from app.services import logger as log_service
from app.services.container import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    services = build_services()
    await services.store.connect()
    app.state.services = services
    if settings.worker_enabled:
        await services.worker.start()
    if settings.reaper_enabled:
        services.reaper.start()
    log_service.log_event("app_started", "prospector started", store=settings.store_backend)
    yield
    # Shutdown
    await services.worker.stop()
    await services.reaper.stop()
    await services.store.close()
    log_service.log_event("app_stopped", "prospector stopped")


app = FastAPI(
    title="Prospector",
    description="Search orchestration pipeline for B2B prospect discovery",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProspectorError)
async def prospector_error_handler(request: Request, exc: ProspectorError):
    if exc.status_code >= 500:
        logger.opt(exception=exc).error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# Routes
app.include_router(searches.router)
app.include_router(jobs.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "prospector", "store": settings.store_backend}
