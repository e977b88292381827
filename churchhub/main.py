from __future__ import annotations

from fastapi import FastAPI, HTTPException

from churchhub.api.routers import audit, branch_access, branches, data_sharing, identity, roles, small_groups
from churchhub.infra.audit import AuditMiddleware
from churchhub.infra.db import check_db_ready
from churchhub.infra.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="churchhub",
    description="Multi-branch church administration: branch access, roles and data sharing.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(branch_access.router, prefix="/api/identity", tags=["branch-access"])
app.include_router(branches.router, prefix="/api/branches", tags=["branches"])
app.include_router(roles.router, prefix="/api/security", tags=["roles"])
app.include_router(data_sharing.router, prefix="/api/security/data-sharing", tags=["data-sharing"])
app.include_router(audit.router, prefix="/api/security/audit-logs", tags=["audit"])
app.include_router(small_groups.router, prefix="/api/groups", tags=["small-groups"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
