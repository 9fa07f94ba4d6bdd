from pathlib import Path
from contextlib import asynccontextmanager
import asyncio
from typing import Optional

from alembic import command
from alembic.config import Config
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from intelpipe.api.routes import (
    alerts_router,
    entities_router,
    health_router,
    items_router,
    pipeline_router,
    stats_router,
)
from intelpipe.core.config import settings
from intelpipe.core.errors import ConfigError
from intelpipe.core.loader import load_alert_conditions, load_source_configs
from intelpipe.core.logging import get_logger
from intelpipe.services.pipeline_service import PipelineService


log = get_logger("app")

# Background task handle
_pipeline_task: Optional[asyncio.Task] = None
_pipeline_service: Optional[PipelineService] = None


def run_migrations() -> None:
    """Execute Alembic migrations programmatically on startup."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_cfg = Config(str(project_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
    log.info("Running Alembic migrations to head")
    command.upgrade(alembic_cfg, "head")
    log.info("Alembic migrations applied")


async def run_due_sources(service: PipelineService) -> None:
    """Run one cycle for every source whose interval has elapsed."""
    try:
        configs = load_source_configs(settings.SOURCES_FILE)
    except ConfigError as exc:
        log.error(f"Source configuration invalid, skipping cycle: {exc}")
        return

    due = service.due_sources(configs)
    if not due:
        log.debug("No sources due")
        return

    summary = await service.run_cycle(due)
    for name, source in summary.sources.items():
        if source.status == "error":
            log.error(f"Source {name}: failed - {source.error}")
        else:
            log.info(f"Source {name}: {source.status}, collected {source.collected}, processed {source.processed}")


async def scheduled_pipeline_task(service: PipelineService) -> None:
    """Background task that checks for due sources every scheduler tick."""
    interval = settings.SCHEDULER_TICK_SECONDS
    log.info(f"Scheduled pipeline task started (tick: {interval}s)")

    while not service.stopping:
        try:
            await run_due_sources(service)
            await service.sleep_until_stopped(interval)
        except asyncio.CancelledError:
            log.info("Scheduled pipeline task cancelled")
            break
        except Exception as exc:
            log.exception(f"Scheduled pipeline task error: {exc}")
            # Continue running despite errors
            await service.sleep_until_stopped(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _pipeline_task, _pipeline_service

    # Log environment mode
    log.info(f"Starting application in {settings.ENV.upper()} mode")
    if settings.is_production:
        log.info("Production mode: Debug disabled, docs disabled, stricter logging")
    else:
        log.info("Development mode: Debug enabled, docs available")

    # Startup
    try:
        run_migrations()
    except Exception:
        log.exception("Failed to apply migrations on startup")
        raise

    if settings.PIPELINE_ENABLED:
        log.info("Starting scheduled pipeline background task...")
        _pipeline_service = PipelineService(alert_conditions=load_alert_conditions(settings.ALERTS_FILE))
        _pipeline_task = asyncio.create_task(scheduled_pipeline_task(_pipeline_service))
    else:
        log.info("Scheduled pipeline is disabled (PIPELINE_ENABLED=false)")

    yield

    # Shutdown
    log.info("Shutting down services...")

    if _pipeline_service:
        _pipeline_service.request_stop()

    if _pipeline_task:
        # In-flight items get a grace period before the task is cancelled
        done, _ = await asyncio.wait({_pipeline_task}, timeout=settings.SHUTDOWN_GRACE_SECONDS)
        if not done:
            log.info("Cancelling scheduled pipeline task...")
            _pipeline_task.cancel()
            try:
                await _pipeline_task
            except asyncio.CancelledError:
                pass

    if _pipeline_service:
        await _pipeline_service.aclose()

    log.info("Application shutdown complete")


# Configure FastAPI based on environment
app = FastAPI(
    title="Intelpipe",
    description="OSINT collection pipeline: collect, deduplicate, extract, enrich, store and alert",
    version="1.0.0",
    lifespan=lifespan,
    # Disable docs in production for security
    docs_url="/docs" if settings.docs_enabled else None,
    redoc_url="/redoc" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.docs_enabled else None,
    # Debug mode only in development
    debug=settings.debug_enabled,
)


@app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError):
    log.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": f"configuration error: {exc}"})


app.include_router(health_router)
app.include_router(items_router)
app.include_router(entities_router)
app.include_router(pipeline_router)
app.include_router(alerts_router)
app.include_router(stats_router)
