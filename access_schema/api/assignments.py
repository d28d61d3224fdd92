"""Role assignment API router."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from access_schema.core.container import AccessSchema, get_access_schema
from access_schema.core.exceptions import conflict
from access_schema.core.security import request_context, require_read_key, require_write_key
from access_schema.db.session import get_db
from access_schema.schemas.schemas import (
    GrantRequest,
    MutationResponse,
    RevokeRequest,
    SaveRolesRequest,
    UserRolesRequest,
    UserRolesResponse,
)

router = APIRouter(tags=["assignments"])


@router.post("/roles", response_model=UserRolesResponse)
async def user_roles(
    body: UserRolesRequest,
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_read_key),
):
    """Direct roles of a principal, optionally with every registered ancestor."""
    if body.with_inheritance:
        roles = schema.assignments.get_roles_with_inheritance(db, body.user_id, body.include_expired)
    else:
        roles = schema.assignments.get_roles(db, body.user_id, body.include_expired)
    return UserRolesResponse(user_id=body.user_id, roles=roles)


@router.post("/grant", response_model=MutationResponse)
async def grant_role(
    body: GrantRequest,
    request: Request,
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_write_key),
):
    added = schema.assignments.add_role(
        db,
        body.user_id,
        body.role_path,
        performed_by=body.performed_by,
        expires_at=body.expires_at,
        context=request_context(request),
    )
    if not added:
        raise conflict("Role already assigned or rejected by assignment rules")
    return MutationResponse(success=True, user_id=body.user_id, role_path=body.role_path, message="Role granted")


@router.post("/revoke", response_model=MutationResponse)
async def revoke_role(
    body: RevokeRequest,
    request: Request,
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_write_key),
):
    schema.assignments.remove_role(
        db,
        body.user_id,
        body.role_path,
        performed_by=body.performed_by,
        context=request_context(request),
    )
    return MutationResponse(success=True, user_id=body.user_id, role_path=body.role_path, message="Role revoked")


@router.put("/users/{user_id}/roles", response_model=MutationResponse)
async def save_user_roles(
    user_id: int,
    body: SaveRolesRequest,
    request: Request,
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_write_key),
):
    """Replace the principal's direct roles; all-or-nothing."""
    saved = schema.assignments.save_roles(
        db, user_id, body.roles, performed_by=body.performed_by, context=request_context(request)
    )
    if not saved:
        raise conflict("Role update rolled back")
    return MutationResponse(success=True, user_id=user_id, message="Roles updated")
