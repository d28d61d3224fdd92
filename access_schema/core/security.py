"""API-key authorization for the external HTTP API."""

import hmac
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from access_schema.core.container import AccessSchema, get_access_schema
from access_schema.db.session import get_db


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def request_context(request: Request) -> Dict[str, Any]:
    """Free-form context bag recorded with every audit entry of a request."""
    return {
        "ip": client_ip(request),
        "user_agent": request.headers.get("user-agent", ""),
        "method": request.method,
        "path": request.url.path,
        "request_id": getattr(request.state, "request_id", None),
    }


def _matches(candidate: Optional[str], expected: Optional[str]) -> bool:
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


class RequireApiKey:
    """Dependency that checks the ``x-api-key`` header.

    Read endpoints accept either the read-only or the read-write key; write
    endpoints only the read-write key. With no keys configured every request
    is refused. Every attempt is audited.
    """

    def __init__(self, write: bool = False):
        self.write = write

    async def __call__(
        self,
        request: Request,
        x_api_key: Optional[str] = Header(None),
        db: Session = Depends(get_db),
        schema: AccessSchema = Depends(get_access_schema),
    ) -> str:
        read_key = schema.settings.API_KEY_READONLY
        write_key = schema.settings.API_KEY_READWRITE

        key_type = ""
        if _matches(x_api_key, write_key):
            key_type = "readwrite"
        elif not self.write and _matches(x_api_key, read_key):
            key_type = "readonly"

        context = request_context(request)
        context["key_type"] = key_type
        authorized = bool(key_type)
        schema.audit.log_event(
            db,
            0,
            "api_access" if authorized else "api_denied",
            request.url.path,
            context,
            level="INFO" if authorized else "WARN",
        )

        if not authorized:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid or missing API key for this operation",
            )
        return key_type


require_read_key = RequireApiKey(write=False)
require_write_key = RequireApiKey(write=True)
