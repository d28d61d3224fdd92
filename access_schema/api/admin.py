"""Admin / Audit API router."""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from access_schema.core.container import AccessSchema, get_access_schema
from access_schema.core.security import require_read_key, require_write_key
from access_schema.db.session import get_db
from access_schema.schemas.schemas import AuditLogOut, CleanupResponse

router = APIRouter(tags=["admin"])


@router.get("/audit")
async def get_audit_logs(
    user_id: Optional[int] = Query(None),
    action: Optional[str] = Query(None),
    role_path: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_read_key),
):
    """Query audit logs."""
    result = schema.audit.query_logs(db, user_id, action, role_path, page, page_size)
    return {
        "logs": [
            AuditLogOut.model_validate(log)
            for log in result["logs"]
        ],
        "total": result["total"],
        "page": result["page"],
    }


@router.post("/maintenance/cleanup", response_model=CleanupResponse)
async def run_cleanup(
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_write_key),
):
    """Run one batch of expiry and audit-retention cleanup now."""
    expired = schema.assignments.cleanup_expired(db)
    purged = schema.audit.cleanup_logs(db)
    return CleanupResponse(expired_roles=expired, audit_logs=purged)


@router.get("/cache/stats")
async def cache_stats(
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_read_key),
):
    return {
        "enabled": schema.cache.enabled,
        "stats": schema.cache.stats(),
        "patterns": schema.compiler.cache_info()._asdict(),
    }
