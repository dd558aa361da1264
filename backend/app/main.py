from typing import Optional

import sentry_sdk
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration
from starlette.requests import Request

from backend.app.core.config import settings
from backend.app.core.logging import configure_logging, init_sentry, logger
from backend.app.scraper.scheduler import Scheduler

configure_logging(settings.log_level)
init_sentry(FastApiIntegration())

app = FastAPI(title="YSBA Live", version="0.1.0")

# Set on startup when the worker runs inside the web process.
scheduler: Optional[Scheduler] = None


@app.middleware("http")
async def sentry_request_context(request: Request, call_next):
    scope = sentry_sdk.get_current_scope()
    scope.set_tag("method", request.method)
    scope.set_tag("path", request.url.path)
    return await call_next(request)


@app.on_event("startup")
def start_worker() -> None:
    global scheduler
    if not settings.run_worker_in_process:
        return
    from backend.app.worker import build_scheduler

    scheduler = build_scheduler(settings)
    scheduler.start()
    logger.info("In-process worker started")


@app.on_event("shutdown")
def stop_worker() -> None:
    if scheduler is not None:
        scheduler.shutdown(timeout=settings.shutdown_timeout)


@app.get("/health")
def healthcheck():
    return {"status": "ok", "env": settings.app_env}


@app.get("/health/worker")
def worker_health():
    if scheduler is None:
        return {"status": "disabled", "worker": None}
    status = scheduler.status()
    healthy = status["lastError"] is None or (
        status["lastRun"] is not None
        and status["lastRun"]["success"]
        and status["lastRun"]["runNumber"] > status["lastError"].get("runNumber", 0)
    )
    return {"status": "ok" if healthy else "degraded", "worker": status}
