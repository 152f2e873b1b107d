"""
Operational endpoints: liveness, readiness and the Prometheus scrape target.

None of these require auth and none echo configuration values.
"""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from logtopost.core.database import get_engine
from logtopost.core.metrics import METRICS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ops"])

TABLES = ("users", "user_entitlements", "billing_events", "trial_eligibility_reviews")
PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


def _not_ready(reason: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "unavailable", "detail": reason})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Ready once the database answers and the billing tables exist."""
    engine = get_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        absent = [name for name in TABLES if not inspect(engine).has_table(name)]
    except SQLAlchemyError as e:
        logger.error("[readyz] database check failed", extra={"error_message": str(e)})
        return _not_ready("database unreachable")
    if absent:
        logger.warning("[readyz] schema incomplete", extra={"missing_tables": absent})
        return _not_ready("missing tables: " + ", ".join(absent))
    return {"status": "ok"}


@router.get("/metrics")
def metrics():
    return Response(content=METRICS.render_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
