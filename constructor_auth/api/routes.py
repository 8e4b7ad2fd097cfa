from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from constructor_auth.api.schemas import (
    ActivityDay,
    AdminUserPatchRequest,
    AdminUserStatusRequest,
    Envelope,
    OAuthLoginRequest,
    OwnProfileResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    RecoveryConfirmRequest,
    RecoveryInitRequest,
    SignInRequest,
    SignUpInitRequest,
    SignUpRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UserListResponse,
    UserResponse,
)
from constructor_auth.logging import get_logger
from constructor_auth.service.errors import UnauthorizedError
from constructor_auth.service.runtime import get_runtime
from constructor_auth.storage.models import AuditContext, OAuthPayload

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def audit_context(
    request: Request,
    user_agent: Optional[str] = Header(None),
    x_device_info: Optional[str] = Header(None, alias="X-Device-Info"),
) -> AuditContext:
    return AuditContext(
        ip_address=request.client.host if request.client else "unknown",
        user_agent=user_agent or "unknown",
        device_info=x_device_info or "unknown",
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    runtime = get_runtime()
    try:
        claims = runtime.auth.resolve_access_token(_bearer_token(authorization))
    except UnauthorizedError:
        raise _http_error("unauthorized", "Invalid access token", status_code=401)
    user = await runtime.users.get(int(claims["sub"]))
    if not user or user.is_deleted or not user.is_active:
        raise _http_error("unauthorized", "Invalid access token", status_code=401)
    return claims


async def get_admin_user(
    claims: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    if not claims.get("is_super"):
        raise _http_error("forbidden", "admin access required", status_code=403)
    return claims


@router.post("/user/sign-up-init", response_model=Envelope, tags=["user"])
async def sign_up_init(
    body: SignUpInitRequest, context: AuditContext = Depends(audit_context)
):
    """Send a sign-up verification code to the email address."""
    runtime = get_runtime()
    await runtime.auth.sign_up_init(body.email, context)
    return Envelope(status="ok", data={"sent": True})


@router.post("/user/sign-up", response_model=Envelope, tags=["user"])
async def sign_up(body: SignUpRequest, context: AuditContext = Depends(audit_context)):
    """Create the account after the code from sign-up-init is confirmed.

    Raises:
        400: If the code is wrong, expired or superseded
        409: If the email is already registered
    """
    runtime = get_runtime()
    pair = await runtime.auth.sign_up(
        email=body.email,
        password=body.password,
        code=body.code,
        first_name=body.first_name,
        last_name=body.last_name,
        profile=body.profile_fields() or None,
        context=context,
    )
    return Envelope(status="ok", data=TokenPairResponse.from_pair(pair))


@router.post("/user/sign-in", response_model=Envelope, tags=["user"])
async def sign_in(body: SignInRequest, context: AuditContext = Depends(audit_context)):
    runtime = get_runtime()
    pair = await runtime.auth.sign_in(body.username, body.password, context)
    return Envelope(status="ok", data=TokenPairResponse.from_pair(pair))


@router.post("/user/sign-out", response_model=Envelope, tags=["user"])
async def sign_out(
    claims: Dict[str, Any] = Depends(get_current_user),
    context: AuditContext = Depends(audit_context),
):
    runtime = get_runtime()
    await runtime.auth.sign_out(int(claims["sub"]), context)
    return Envelope(status="ok", data={"signed_out": True})


@router.post("/user/new-access-token", response_model=Envelope, tags=["user"])
async def new_access_token(
    body: TokenRefreshRequest, context: AuditContext = Depends(audit_context)
):
    runtime = get_runtime()
    pair = await runtime.auth.new_access_token(body.refresh_token, context)
    return Envelope(status="ok", data=TokenPairResponse.from_pair(pair))


@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_own_profile(claims: Dict[str, Any] = Depends(get_current_user)):
    runtime = get_runtime()
    result = await runtime.auth.get_own_profile(int(claims["sub"]))
    return Envelope(status="ok", data=OwnProfileResponse.from_result(result))


@router.put("/user/profile", response_model=Envelope, tags=["user"])
async def update_own_profile(
    body: ProfileUpdateRequest, claims: Dict[str, Any] = Depends(get_current_user)
):
    """Partially update the caller's profile; first and last name update the account."""
    runtime = get_runtime()
    patch = body.changes()
    if not patch:
        raise _http_error("validation_error", "No fields to update", status_code=400)
    result = await runtime.auth.update_own_profile(int(claims["sub"]), patch)
    return Envelope(status="ok", data=OwnProfileResponse.from_result(result))


@router.post("/user/recovery-init", response_model=Envelope, tags=["user"])
async def recovery_init(
    body: RecoveryInitRequest, context: AuditContext = Depends(audit_context)
):
    """Start password recovery; the response is the same whether or not the user exists."""
    runtime = get_runtime()
    await runtime.auth.recovery_init(body.username, context)
    return Envelope(status="ok", data={"sent": True})


@router.post("/user/recovery-confirm", response_model=Envelope, tags=["user"])
async def recovery_confirm(
    body: RecoveryConfirmRequest, context: AuditContext = Depends(audit_context)
):
    runtime = get_runtime()
    await runtime.auth.recovery_confirm(
        username=body.username, code=body.code, password=body.password, context=context
    )
    return Envelope(status="ok", data={"password_changed": True})


@router.post("/oauth/login", response_model=Envelope, tags=["oauth"])
async def oauth_login(body: OAuthLoginRequest, context: AuditContext = Depends(audit_context)):
    runtime = get_runtime()
    pair = await runtime.auth.oauth_login(
        OAuthPayload(type=body.type, token=body.token), context
    )
    return Envelope(status="ok", data=TokenPairResponse.from_pair(pair))


@router.post("/admin/sign-in", response_model=Envelope, tags=["admin"])
async def admin_sign_in(body: SignInRequest, context: AuditContext = Depends(audit_context)):
    runtime = get_runtime()
    pair = await runtime.auth.admin_sign_in(body.username, body.password, context)
    return Envelope(status="ok", data=TokenPairResponse.from_pair(pair))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Dict[str, Any] = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.auth.list_users(page=page, limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(
            data=[UserResponse.from_user(user) for user in result["data"]],
            total=result["total"],
            page=result["page"],
            limit=result["limit"],
        ),
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: int = Path(..., ge=1), admin: Dict[str, Any] = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/users/{user_id}/profile", response_model=Envelope, tags=["admin"])
async def admin_get_profile(
    user_id: int = Path(..., ge=1), admin: Dict[str, Any] = Depends(get_admin_user)
):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(user_id)
    return Envelope(status="ok", data=ProfileResponse.from_profile(profile))


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    body: AdminUserPatchRequest,
    user_id: int = Path(..., ge=1),
    admin: Dict[str, Any] = Depends(get_admin_user),
):
    runtime = get_runtime()
    patch = body.model_dump(exclude_unset=True)
    if not patch:
        raise _http_error("validation_error", "No fields to update", status_code=400)
    user = await runtime.auth.update_user(user_id, patch)
    logger.info("admin_update_user", admin_id=admin["sub"], user_id=user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_user_status(
    body: AdminUserStatusRequest,
    user_id: int = Path(..., ge=1),
    admin: Dict[str, Any] = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_status(user_id, body.is_active)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: int = Path(..., ge=1), admin: Dict[str, Any] = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.auth.delete_user(user_id)
    logger.info("admin_delete_user", admin_id=admin["sub"], user_id=user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/stats/auth-activity", response_model=Envelope, tags=["admin"])
async def admin_auth_activity(
    start: date = Query(...),
    end: date = Query(...),
    admin: Dict[str, Any] = Depends(get_admin_user),
):
    """Successful registrations and logins per day, zero-filled over the range."""
    runtime = get_runtime()
    days = runtime.auth.get_activity_by_day(start, end)
    return Envelope(status="ok", data=[ActivityDay(**day) for day in days])
