"""
api/routes/v1/users.py -- User directory endpoints (admin only).

Routes:
  GET    /api/v1/users           -- list users (?page=1&limit=20)
  GET    /api/v1/users/{id}      -- one user
  PUT    /api/v1/users/{id}      -- merge name / email / role
  DELETE /api/v1/users/{id}      -- delete user and revoke all their sessions

Every route depends on require_roles() with no extra roles, i.e. only the
elevated Admin role gets through. Self-deletion is blocked so an admin
cannot lock themselves out by accident.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import UserPageResponse, UserResponse, UserUpdateRequest
from auth.dependencies import Principal, require_roles
from auth.errors import AuthError, ErrorKind
from auth.service import DEFAULT_PAGE_SIZE

router = APIRouter(dependencies=[Depends(require_roles())])


@router.get("/users", response_model=UserPageResponse)
def list_users(
    request: Request,
    page: Annotated[int, Query(description="Page number (default: 1)")] = 1,
    limit: Annotated[int, Query(description="Items per page (default: 20, max: 100)")] = DEFAULT_PAGE_SIZE,
) -> UserPageResponse:
    """List accounts ordered by name, one page at a time.

    Out-of-range page/limit values are clamped, not rejected.
    """
    db, service, settings = request.app.state.db, request.app.state.auth_service, request.app.state.settings
    with db.transaction(timeout=settings.transaction_timeout_seconds, write=False) as conn:
        result = service.list_users(conn, page=page, limit=limit)
    return UserPageResponse.from_page(result)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: str) -> UserResponse:
    db, service, settings = request.app.state.db, request.app.state.auth_service, request.app.state.settings
    with db.transaction(timeout=settings.transaction_timeout_seconds, write=False) as conn:
        profile = service.get_user(conn, user_id)
    return UserResponse.from_profile(profile)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(request: Request, user_id: str, body: UserUpdateRequest) -> UserResponse:
    """Update name, email and/or role. Omitted fields are left unchanged.

    A role change takes effect on the user's next login or refresh; access
    tokens already issued keep their old role until they expire.
    """
    db, service, settings = request.app.state.db, request.app.state.auth_service, request.app.state.settings
    with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
        profile = service.update_user(conn, user_id, name=body.name, email=body.email, role=body.role)
    return UserResponse.from_profile(profile)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_roles()),
) -> Response:
    """Delete a user. Their refresh tokens stop working immediately."""
    if user_id == principal.user_id:
        raise AuthError(ErrorKind.FORBIDDEN, "You cannot delete your own account.")
    db, service, settings = request.app.state.db, request.app.state.auth_service, request.app.state.settings
    with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
        service.delete_user(conn, user_id)
    return Response(status_code=204)
