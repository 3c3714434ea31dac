from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from otpgate.api.schemas import (
    AdminCreateUserRequest,
    AdminUserStatusRequest,
    AuditLogListResponse,
    AuditLogResponse,
    AuthResponse,
    Envelope,
    LogoutAllResponse,
    LogoutRequest,
    RequestCodeRequest,
    RequestCodeResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UserResponse,
    UserStatisticsResponse,
    VerifyCodeRequest,
)
from otpgate.logging import get_correlation_id, get_logger
from otpgate.service.auth import AuthContext
from otpgate.service.runtime import get_runtime
from otpgate.storage.models import AuditLogEntry, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        email_verified=user.email_verified,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
        updated_at=user.updated_at,
        created_by=user.created_by,
        employee_id=user.employee_id,
        deleted_at=user.deleted_at,
        deleted_by=user.deleted_by,
    )


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_used_at=session.last_used_at,
        ip_addr=session.ip_addr,
        device_info=session.device_info or {},
    )


def _audit_response(entry: AuditLogEntry) -> AuditLogResponse:
    return AuditLogResponse(
        id=entry.id,
        admin_id=entry.admin_id,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        old_values=entry.old_values,
        new_values=entry.new_values,
        ip_addr=entry.ip_addr,
        user_agent=entry.user_agent,
        created_at=entry.created_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, required_role="admin")


# auth


@router.post("/auth/request-code", response_model=Envelope, tags=["auth"])
async def request_code(body: RequestCodeRequest):
    """Issue a one-time code and mail it to a registered address.

    Raises:
        404: If no active account exists for the address
        403: If the account is deactivated
    """
    runtime = get_runtime()
    result = await runtime.auth.request_code(body.email, body.purpose)
    return _ok(
        RequestCodeResponse(
            email=result.email,
            purpose=result.purpose.value,
            challenge_id=result.challenge_id,
            expires_at=result.expires_at,
            delivered=result.delivered,
        )
    )


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(
    body: VerifyCodeRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Redeem a one-time code for an access/refresh token pair.

    Raises:
        400: If the code is malformed
        401: If the code is wrong, expired or out of attempts
    """
    runtime = get_runtime()
    result = await runtime.auth.redeem_code(
        body.email,
        body.code,
        body.purpose,
        user_agent=user_agent,
        platform=body.platform,
        ip_addr=_client_ip(request),
    )
    return _ok(
        AuthResponse(
            user=_user_response(result.user),
            session_id=result.session.id,
            access_token=result.access_token,
            access_token_expires_at=result.access_expires_at,
            refresh_token=result.refresh_token,
            refresh_token_expires_at=result.refresh_expires_at,
        )
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return _ok(
        TokenRefreshResponse(
            access_token=result.access_token,
            access_token_expires_at=result.access_expires_at,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return _ok({"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.user_id)
    return _ok(LogoutAllResponse(sessions_revoked=count))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.user_id)
    return _ok(_user_response(user))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return _ok(SessionListResponse(items=[_session_response(s) for s in sessions]))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    """Revoke one of the caller's own sessions; other users' sessions read as not found."""
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return _ok({"message": "session revoked", "session_id": session_id})


# admin


@router.get("/admin/stats", response_model=Envelope, tags=["admin"])
async def admin_user_statistics(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    report = await runtime.admin.user_statistics()
    return _ok(UserStatisticsResponse.model_validate(report))


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    user = await runtime.admin.create_user(
        body.email,
        body.role,
        actor=principal.user_id,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    return _ok(_user_response(user))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.admin.get_user(user_id)
    return _ok(_user_response(user))


@router.put("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_user_status(
    body: AdminUserStatusRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
    user_agent: Optional[str] = Header(None),
):
    """Activate or deactivate an account. Deactivation ends all of its sessions."""
    runtime = get_runtime()
    user = await runtime.admin.set_user_active(
        user_id,
        body.is_active,
        actor=principal.user_id,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    return _ok(_user_response(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    user = await runtime.admin.soft_delete_user(
        user_id,
        actor=principal.user_id,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    return _ok(_user_response(user))


@router.post("/admin/users/{user_id}/restore", response_model=Envelope, tags=["admin"])
async def admin_restore_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    user = await runtime.admin.restore_user(
        user_id,
        actor=principal.user_id,
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )
    return _ok(_user_response(user))


@router.get("/admin/users/{user_id}/audit-logs", response_model=Envelope, tags=["admin"])
async def admin_user_audit_logs(
    user_id: str = Path(..., max_length=64),
    limit: int = Query(50, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    entries = await runtime.admin.list_user_audit_logs(user_id, limit)
    return _ok(AuditLogListResponse(items=[_audit_response(e) for e in entries]))
