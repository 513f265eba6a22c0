from psetflow_backend.api.health import build_health_router
from psetflow_backend.api.jobs import build_jobs_router

__all__ = [
    "build_health_router",
    "build_jobs_router",
]
