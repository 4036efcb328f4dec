from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from authgate.api.schemas import (
    DeleteAccountRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    PasswordResetConfirm,
    ProfileUpdateRequest,
    ReconcileRequest,
    RegisterRequest,
    SchoolCreateRequest,
    TokenBalanceAdjustRequest,
    TokenRefreshRequest,
    TokenVerifyRequest,
)
from authgate.logging import get_logger
from authgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    MigrationFailedError,
    NotFoundError,
    ServerError,
)
from authgate.service.runtime import get_runtime
from authgate.service.tokens import TokenVerification
from authgate.storage.models import School

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class Principal:
    verification: TokenVerification
    token: str

    @property
    def user(self):
        return self.verification.user


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("No token provided")
    runtime = get_runtime()
    verification = await runtime.auth.authenticate(token)
    return Principal(verification=verification, token=token)


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.user.is_admin:
        logger.warning("admin_access_denied", user_id=principal.user.id)
        raise ForbiddenError("admin access required")
    return principal


def _school_to_dict(school: School) -> dict:
    return {
        "id": school.id,
        "name": school.name,
        "created_at": school.created_at.isoformat() if school.created_at else None,
    }


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account with the identity provider and a matching local row.

    Raises:
        409: If the email is already registered in either store
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.register(
        body.email,
        body.password,
        display_name=body.display_name,
        photo_url=body.photo_url,
    )
    return Envelope(
        status="ok",
        data={"user": user.public_dict(), "tokens": tokens.as_dict()},
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Accounts that only exist locally are migrated to the identity provider on
    their first successful login.

    Raises:
        401: If credentials are invalid
        500: If a verified local account could not be migrated
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data={
            "user": result.user.public_dict(),
            "tokens": result.tokens.as_dict(),
            "migrated": result.migrated,
        },
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data={"tokens": tokens.as_dict()})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.verification, principal.token)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.patch("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        principal.user, display_name=body.display_name, photo_url=body.photo_url
    )
    return Envelope(status="ok", data={"user": user.public_dict()})


@router.delete("/auth/user", response_model=Envelope, tags=["auth"])
async def delete_account(
    body: DeleteAccountRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal.user, body.password, id_token=principal.token)
    return Envelope(status="ok", data={"message": "Account deleted successfully"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    """Send a password reset email without revealing whether the email exists."""
    runtime = get_runtime()
    outcome = await runtime.auth.forgot_password(body.email)
    if outcome.success:
        return Envelope(status="ok", data={"message": outcome.message})
    if outcome.migrated:
        raise ServerError(outcome.message, error_code="reset_email_failed")
    raise MigrationFailedError(outcome.message)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.oob_code, body.new_password)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.post("/auth/check-email", response_model=Envelope, tags=["auth"])
async def check_email(body: EmailRequest):
    runtime = get_runtime()
    result = await runtime.auth.check_email(body.email)
    data = {
        "allowed": result.allowed,
        "conflict_type": result.conflict_type.value if result.conflict_type else None,
        "error_code": result.error_code,
        "message": result.actionable_message,
        "support_code": result.support_code,
    }
    return Envelope(status="ok", data=data)


@router.post("/token/verify", response_model=Envelope, tags=["token"])
async def verify_token(body: TokenVerifyRequest):
    runtime = get_runtime()
    verification = await runtime.auth.authenticate(body.token)
    return Envelope(status="ok", data=verification.as_dict())


@router.get("/token/verify-header", response_model=Envelope, tags=["token"])
async def verify_token_header(principal: Principal = Depends(get_principal)):
    return Envelope(status="ok", data=principal.verification.as_dict())


@router.get("/schools", response_model=Envelope, tags=["schools"])
async def list_schools(limit: Optional[int] = Query(None, ge=1)):
    runtime = get_runtime()
    schools = await runtime.schools.list(limit)
    return Envelope(
        status="ok",
        data={"items": [_school_to_dict(s) for s in schools], "count": len(schools)},
    )


@router.post("/schools", response_model=Envelope, tags=["schools"])
async def create_school(body: SchoolCreateRequest):
    runtime = get_runtime()
    school = await runtime.schools.get_or_create(body.name)
    return Envelope(status="ok", data=_school_to_dict(school))


@router.get("/schools/lookup", response_model=Envelope, tags=["schools"])
async def lookup_school(name: str = Query(..., min_length=1, max_length=255)):
    runtime = get_runtime()
    school = await runtime.schools.find(name)
    if school is None:
        raise NotFoundError("School not found", detail={"name": name})
    return Envelope(status="ok", data=_school_to_dict(school))


@router.get("/schools/{school_id}", response_model=Envelope, tags=["schools"])
async def get_school(school_id: int = Path(..., ge=1)):
    runtime = get_runtime()
    school = await runtime.schools.get(school_id)
    return Envelope(status="ok", data=_school_to_dict(school))


@router.get("/admin/federation/orphans", response_model=Envelope, tags=["admin"])
async def admin_detect_orphans(principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    report = await runtime.auth.resolver.detect_orphaned_accounts()
    return Envelope(status="ok", data=report.as_dict())


@router.post("/admin/federation/retry", response_model=Envelope, tags=["admin"])
async def admin_retry_failed(principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    report = await runtime.federation.retry_failed_federations()
    logger.info("admin_federation_retry", admin_id=principal.user.id, **report.as_dict())
    return Envelope(status="ok", data=report.as_dict())


@router.post("/admin/federation/reconcile", response_model=Envelope, tags=["admin"])
async def admin_reconcile(
    body: ReconcileRequest, principal: Principal = Depends(get_admin_principal)
):
    runtime = get_runtime()
    changed = await runtime.auth.resolver.reconcile_orphaned_local_account(body.email)
    logger.info("admin_federation_reconcile", admin_id=principal.user.id, changed=changed)
    return Envelope(status="ok", data={"reconciled": changed})


@router.get("/admin/federation/stats", response_model=Envelope, tags=["admin"])
async def admin_migration_stats(principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    stats = await runtime.auth.password_reset.migration_stats()
    return Envelope(status="ok", data=stats.as_dict())


@router.post("/admin/users/{user_id}/tokens", response_model=Envelope, tags=["admin"])
async def admin_adjust_tokens(
    body: TokenBalanceAdjustRequest,
    user_id: str = Path(..., min_length=1),
    principal: Principal = Depends(get_admin_principal),
):
    """Credit or debit a user's token balance.

    Raises:
        404: If the user does not exist
        409: If a debit would take the balance below zero
    """
    runtime = get_runtime()
    user = await runtime.auth.adjust_token_balance(user_id, body.delta)
    logger.info("admin_token_adjust", admin_id=principal.user.id, user_id=user_id)
    return Envelope(status="ok", data={"user": user.public_dict()})


@router.post("/admin/users/{user_id}/push", response_model=Envelope, tags=["admin"])
async def admin_push_profile(
    user_id: str = Path(..., min_length=1),
    principal: Principal = Depends(get_admin_principal),
):
    """Copy the local username and email onto the linked external identity."""
    runtime = get_runtime()
    user = await runtime.auth.push_profile(user_id)
    logger.info("admin_profile_push", admin_id=principal.user.id, user_id=user_id)
    return Envelope(status="ok", data={"user": user.public_dict()})
