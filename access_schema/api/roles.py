"""Role tree API router."""

from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from access_schema.core.container import AccessSchema, get_access_schema
from access_schema.core.security import request_context, require_read_key, require_write_key
from access_schema.db.session import get_db
from access_schema.schemas.schemas import AllRolesResponse, RegisterPathsRequest, RegisterPathsResponse

router = APIRouter(tags=["roles"])


@router.post("/register", response_model=RegisterPathsResponse)
async def register_paths(
    body: RegisterPathsRequest,
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_write_key),
):
    """Register many role paths, each given as a list of segment names."""
    result = schema.tree.register_paths(db, body.paths)
    return RegisterPathsResponse(**result)


@router.get("/roles/all", response_model=AllRolesResponse)
async def all_roles(
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_read_key),
):
    """Every active role path plus the nested hierarchy."""
    hierarchy = schema.tree.get_tree(db)
    paths = schema.tree.flatten_tree(hierarchy)
    return AllRolesResponse(total=len(paths), roles=paths, hierarchy=hierarchy)


@router.get("/roles/tree")
async def role_tree(
    parent_id: Optional[int] = Query(None, ge=1),
    max_depth: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_read_key),
):
    return {"tree": schema.tree.get_tree(db, parent_id, max_depth)}


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: int,
    request: Request,
    cascade: bool = Query(False),
    db: Session = Depends(get_db),
    schema: AccessSchema = Depends(get_access_schema),
    key_type: str = Depends(require_write_key),
):
    """Soft-delete a role, or remove it with its subtree when ``cascade`` is set."""
    schema.tree.delete_role(db, role_id, cascade=cascade, context=request_context(request))
    return {"success": True, "role_id": role_id, "cascade": cascade}
