"""
api/deps.py

Shared FastAPI dependencies.

The upstream gateway authenticates callers and forwards their role in
X-Caller-Role and their id in X-Caller-Id. Management routes require the
admin role; the returned caller id is recorded as the actor in the audit log.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Header, HTTPException

ADMIN_ROLE = "admin"


def get_engine():
    """FastAPI dependency - replaced in tests via app.dependency_overrides."""
    from .main import get_engine as _get
    return _get()


def get_admin():
    from .main import get_admin as _get
    return _get()


def get_dispatcher():
    from .main import get_dispatcher as _get
    return _get()


async def require_admin(
    x_caller_role: Annotated[str | None, Header()] = None,
    x_caller_id:   Annotated[str | None, Header()] = None,
) -> str:
    """Return the acting admin's id, or reject with 403."""
    if (x_caller_role or "").strip().lower() != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="admin role required")
    return (x_caller_id or "").strip() or ADMIN_ROLE
