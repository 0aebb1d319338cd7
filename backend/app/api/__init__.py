from fastapi import APIRouter

from app.api.routes import audit_controls, audit_findings, audit_runs, auth, tasks, ws
from app.api.routes.auth import require_session

router = APIRouter()

# Auth routes - not protected (login endpoint)
router.include_router(auth.router, prefix="/auth", tags=["auth"])

# Protected routes - require an authenticated session
router.include_router(
    audit_runs.router,
    prefix="/admin/audit-runs",
    tags=["audit-runs"],
    dependencies=[require_session]
)
router.include_router(
    audit_controls.router,
    prefix="/admin/audit-controls",
    tags=["audit-controls"],
    dependencies=[require_session]
)
router.include_router(
    audit_findings.router,
    prefix="/admin/audit-findings",
    tags=["audit-findings"],
    dependencies=[require_session]
)
router.include_router(
    tasks.router,
    prefix="/admin/tasks",
    tags=["tasks"],
    dependencies=[require_session]
)

# WebSocket authenticates from the session cookie itself
router.include_router(ws.router, prefix="/ws", tags=["ws"])
