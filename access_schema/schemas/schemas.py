"""Pydantic schemas for API request/response serialization."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime


# ---- Roles ----
class RegisterPathsRequest(BaseModel):
    paths: List[List[str]] = Field(..., min_length=1)

class RegisterPathsResponse(BaseModel):
    registered: List[str]
    failed: List[Dict[str, Any]] = []

class RoleOut(BaseModel):
    id: int
    parent_id: Optional[int] = None
    name: str
    slug: str
    full_path: str
    depth: int
    is_active: bool = True
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class AllRolesResponse(BaseModel):
    total: int
    roles: List[str]
    hierarchy: List[Dict[str, Any]]


# ---- Assignments ----
class UserRolesRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    with_inheritance: bool = False
    include_expired: bool = False

class UserRolesResponse(BaseModel):
    user_id: int
    roles: List[str]

class GrantRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    role_path: str = Field(..., min_length=1)
    performed_by: Optional[int] = None
    expires_at: Optional[datetime] = None

class RevokeRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    role_path: str = Field(..., min_length=1)
    performed_by: Optional[int] = None

class SaveRolesRequest(BaseModel):
    roles: List[str] = []
    performed_by: Optional[int] = None

class MutationResponse(BaseModel):
    success: bool
    user_id: int
    role_path: Optional[str] = None
    message: Optional[str] = None


# ---- Checks ----
class CheckRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    role_path: str = Field(..., min_length=1)
    include_children: bool = False
    allow_wildcards: bool = False

class CheckResponse(BaseModel):
    user_id: int
    role_path: str
    granted: bool
    reason: Optional[str] = None
    match_type: Optional[str] = None

class PermissionItem(BaseModel):
    path: str = Field(..., min_length=1)
    include_children: bool = False
    allow_wildcards: bool = False

class BatchCheckRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    permissions: List[Union[str, PermissionItem]] = Field(..., min_length=1)

class BatchCheckResponse(BaseModel):
    user_id: int
    results: Dict[str, bool]


# ---- Audit / maintenance ----
class AuditLogOut(BaseModel):
    id: int
    user_id: int
    action: str
    role_path: Optional[str] = None
    context_json: Optional[str] = None
    level: str
    performed_by: Optional[int] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class CleanupResponse(BaseModel):
    expired_roles: int
    audit_logs: int
