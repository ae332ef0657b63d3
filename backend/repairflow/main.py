# backend/repairflow/main.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .domain.errors import ConfigurationError, WorkflowError
from .logging_config import configure_logging

from .middleware.request_id import RequestIDMiddleware
from .middleware.structured_logging import StructuredLoggingMiddleware

from .routers.meta import router as meta_router
from .routers.maintenance import router as maintenance_router
from .routers.bids import router as bids_router
from .routers.photos import router as photos_router
from .routers.escalations import router as escalations_router
from .routers.providers import router as providers_router
from .routers.policies import router as policies_router
from .routers.disputes import router as disputes_router
from .routers.workflow import router as workflow_router

from .services.runtime_metrics import METRICS

API_PREFIX = "/api"

configure_logging()
log = logging.getLogger("repairflow.api")


def _cors_origins() -> list[str]:
    val = getattr(settings, "cors_allow_origins", ["*"])
    if isinstance(val, str):
        v = val.strip()
        return ["*"] if v == "*" else [x.strip() for x in v.split(",") if x.strip()]
    if isinstance(val, list) and val:
        return val
    return ["*"]


app = FastAPI(
    title="RepairFlow Maintenance Engine",
    version=getattr(settings, "app_version", "dev"),
)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(StructuredLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    METRICS.inc(f"errors_{exc.code}")
    extra = {"event": f"workflow_error:{exc.code}", "path": request.url.path}
    if isinstance(exc, ConfigurationError):
        log.error(exc.message, extra=extra)
    else:
        log.info(exc.message, extra=extra)
    return JSONResponse(status_code=exc.http_status, content=exc.as_dict())


# Core
app.include_router(meta_router, prefix=API_PREFIX)

# Request lifecycle
app.include_router(maintenance_router, prefix=API_PREFIX)
app.include_router(bids_router, prefix=API_PREFIX)
app.include_router(photos_router, prefix=API_PREFIX)
app.include_router(escalations_router, prefix=API_PREFIX)

# Providers, policy, disputes
app.include_router(providers_router, prefix=API_PREFIX)
app.include_router(policies_router, prefix=API_PREFIX)
app.include_router(disputes_router, prefix=API_PREFIX)

# Audit/workflow
app.include_router(workflow_router, prefix=API_PREFIX)
