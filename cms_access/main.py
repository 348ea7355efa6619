from __future__ import annotations

from fastapi import FastAPI, HTTPException

from cms_access.api.routers import auth, permissions, roles, users
from cms_access.infra.audit import AuditMiddleware
from cms_access.infra.db import check_db_ready
from cms_access.infra.logging_setup import setup_logging
from cms_access.infra.permission_cache import check_redis_ready, permission_cache

setup_logging()

app = FastAPI(
    title="cms-access",
    description="Role-based access control service for the CMS: users, roles, permissions and checks.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(roles.router, prefix="/api/roles", tags=["roles"])
app.include_router(permissions.router, prefix="/api/permissions", tags=["permissions"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    checks = {"db": "ok" if check_db_ready() else "fail"}
    if permission_cache.enabled:
        checks["redis"] = "ok" if check_redis_ready() else "fail"
    if any(value != "ok" for value in checks.values()):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
