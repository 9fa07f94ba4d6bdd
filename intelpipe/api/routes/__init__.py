from intelpipe.api.routes.alerts import router as alerts_router
from intelpipe.api.routes.entities import router as entities_router
from intelpipe.api.routes.health import router as health_router
from intelpipe.api.routes.items import router as items_router
from intelpipe.api.routes.pipeline import router as pipeline_router
from intelpipe.api.routes.stats import router as stats_router

__all__ = [
    "alerts_router",
    "entities_router",
    "health_router",
    "items_router",
    "pipeline_router",
    "stats_router",
]
