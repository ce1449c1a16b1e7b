from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException

from backoffice.api.routers import billing, rate_cards, registry
from backoffice.infra import locks
from backoffice.infra.audit import AuditMiddleware
from backoffice.infra.db import check_db_ready
from backoffice.infra.redis_state import check_redis_ready

logger = logging.getLogger(__name__)

app = FastAPI(
    title="threepl-backoffice",
    description="Rate-card versioning and billing resolution for 3PL customers.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(registry.router, prefix="/api/registry", tags=["registry"])
app.include_router(rate_cards.router, prefix="/api", tags=["rate-cards"])
app.include_router(billing.router, prefix="/api/billing", tags=["billing"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    ready = db_ok
    # Redis is only a hard dependency when it backs the customer lock.
    if locks.CUSTOMER_LOCK_BACKEND == "redis":
        redis_ok = check_redis_ready()
        checks["redis"] = "ok" if redis_ok else "fail"
        ready = ready and redis_ok
    if not ready:
        logger.warning("readiness_check_failed", extra={"checks": checks})
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
