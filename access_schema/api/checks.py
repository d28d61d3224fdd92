"""Permission check API router."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from access_schema.core.container import AccessSchema, get_access_schema
from access_schema.core.security import request_context, require_read_key
from access_schema.db.session import get_db
from access_schema.schemas.schemas import BatchCheckRequest, BatchCheckResponse, CheckRequest, CheckResponse

router = APIRouter(tags=["checks"])


@router.post("/check", response_model=CheckResponse)
async def check_permission(
    body: CheckRequest,
    request: Request,
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_read_key),
):
    decision = schema.permissions.evaluate(
        db, body.user_id, body.role_path, body.include_children, body.allow_wildcards
    )
    context = request_context(request)
    context.update({
        "match_type": decision.match_type,
        "include_children": body.include_children,
        "allow_wildcards": body.allow_wildcards,
        "cached": decision.cached,
    })
    schema.audit.log_permission_check(db, body.user_id, body.role_path, decision.granted, decision.reason, context)
    return CheckResponse(
        user_id=body.user_id,
        role_path=body.role_path,
        granted=decision.granted,
        reason=decision.reason,
        match_type=decision.match_type,
    )


@router.post("/check/batch", response_model=BatchCheckResponse)
async def check_permissions_batch(
    body: BatchCheckRequest,
    request: Request,
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_read_key),
):
    permissions = [p if isinstance(p, str) else p.model_dump() for p in body.permissions]
    results = schema.permissions.check_permissions_batch(
        db, body.user_id, permissions, context=request_context(request)
    )
    return BatchCheckResponse(user_id=body.user_id, results=results)
