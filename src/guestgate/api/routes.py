"""REST API endpoints."""

import logging
import secrets
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from guestgate.activity import (
    log_auth_fail,
    log_auth_success,
    log_code_sent,
    log_extend,
    log_revoke,
)
from guestgate.auth.codes import VerificationCodeManager, VerifyStatus
from guestgate.auth.orchestrator import AuthorizationOrchestrator, RequestMeta
from guestgate.config import Settings, settings
from guestgate.controller.test_connection import test_unifi
from guestgate.database import get_session
from guestgate.exceptions import (
    AuthenticationError,
    CodeMismatchError,
    DisposableEmailError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from guestgate.notify.notifier import GuestSummary, NotificationDispatcher, Notifier
from guestgate.registry.models import Guest, utcnow
from guestgate.registry.store import (
    get_guest,
    get_latest_guest_by_mac,
    get_or_create_user,
    list_guests,
    normalize_email,
    require_mac,
    set_nickname,
)
from guestgate.scheduler.runner import JOB_NAMES, ReconciliationScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# Request models
class VerifyEmailRequest(BaseModel):
    email: str
    name: str
    mac_address: str | None = None


class ResendCodeRequest(BaseModel):
    email: str


class VerifyCodeRequest(BaseModel):
    email: str
    code: str
    mac_address: str | None = None


class GuestActionRequest(BaseModel):
    guest_id: int


class ExtendGuestRequest(BaseModel):
    guest_id: int
    days: int


class UpdateGuestRequest(BaseModel):
    nickname: str | None = None


# --- Dependencies ---


def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", settings)


def get_code_manager(request: Request) -> VerificationCodeManager:
    return request.app.state.code_manager


def get_orchestrator(request: Request) -> AuthorizationOrchestrator:
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> ReconciliationScheduler:
    return request.app.state.scheduler


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, then X-Real-IP, then the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(ip_address=client_ip(request), user_agent=request.headers.get("user-agent"))


_MISMATCH_MESSAGES = {
    VerifyStatus.expired: "Code expired or not found. Please request a new code.",
    VerifyStatus.exhausted: "Too many failed attempts. Please request a new code.",
}


# --- Guest flow ---


@router.post("/guest/verify-email")
async def verify_email(
    body: VerifyEmailRequest,
    request: Request,
    session: Session = Depends(get_session),
    codes: VerificationCodeManager = Depends(get_code_manager),
) -> dict:
    try:
        issued = await codes.issue(session, body.email, body.name, body.mac_address)
    except DisposableEmailError as e:
        log_auth_fail(
            session,
            reason=e.reason,
            email=normalize_email(body.email),
            ip_address=client_ip(request),
        )
        raise
    log_code_sent(
        session,
        email=normalize_email(body.email),
        name=body.name,
        mac_address=body.mac_address,
        ip_address=client_ip(request),
    )
    return {
        "success": True,
        "message": "Verification code sent to your email",
        "expires_at": issued.expires_at.isoformat(),
    }


@router.post("/guest/resend-code")
async def resend_code(
    body: ResendCodeRequest,
    request: Request,
    session: Session = Depends(get_session),
    codes: VerificationCodeManager = Depends(get_code_manager),
) -> dict:
    issued = await codes.resend(session, body.email)
    log_code_sent(
        session,
        email=normalize_email(body.email),
        ip_address=client_ip(request),
        resend_count=issued.resend_count,
    )
    return {
        "success": True,
        "message": "A new verification code has been sent",
        "expires_at": issued.expires_at.isoformat(),
        "can_resend_at": issued.can_resend_at.isoformat() if issued.can_resend_at else None,
    }


@router.post("/guest/verify-code")
async def verify_code(
    body: VerifyCodeRequest,
    request: Request,
    session: Session = Depends(get_session),
    codes: VerificationCodeManager = Depends(get_code_manager),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
    notifier: Notifier = Depends(get_notifier),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> dict:
    meta = _request_meta(request)
    email = normalize_email(body.email)
    # Reject a malformed MAC before the code is consumed
    body_mac = require_mac(body.mac_address) if body.mac_address else None
    result = codes.verify(session, email, body.code.strip())

    if not result.ok:
        log_auth_fail(
            session,
            reason=f"code_{result.status}",
            email=email,
            mac_address=body_mac,
            ip_address=meta.ip_address,
            remaining_attempts=result.remaining_attempts,
        )
        if result.status == VerifyStatus.wrong:
            message = f"Invalid code. {result.remaining_attempts} attempt(s) remaining."
        else:
            message = _MISMATCH_MESSAGES[result.status]
        raise CodeMismatchError(result.status, message, result.remaining_attempts)

    record = result.record
    name = (record.name if record else None) or "Guest"
    mac = body_mac or (record.mac_address if record else None)

    try:
        user = get_or_create_user(session, email, name)
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to load identity for %s", email)
        raise InternalError("Failed to create user account") from e

    auth = await orchestrator.authorize_guest(session, user, mac, meta)
    log_auth_success(
        session,
        user_id=user.id,
        email=email,
        expires_at=auth.expires_at,
        is_returning=auth.is_returning,
        controller_authorized=auth.controller_authorized,
        mac_address=auth.guest.mac_address or None,
        ip_address=meta.ip_address,
        name=name,
    )
    dispatcher.submit(
        notifier.send_admin_notice,
        GuestSummary(
            name=user.name or name,
            email=email,
            mac_address=auth.guest.mac_address or None,
            expires_at=auth.expires_at,
            ip_address=meta.ip_address,
            authorized_at=auth.guest.authorized_at,
        ),
        label="admin notice",
    )

    response: dict = {
        "success": True,
        "message": "Welcome back!" if auth.is_returning else "You are now connected",
        "expires_at": auth.expires_at.isoformat(),
        "is_returning": auth.is_returning,
        "user": {"email": user.email, "name": user.name},
    }
    if auth.warning:
        response["warning"] = auth.warning
    return response


@router.get("/guest/status")
def guest_status(
    mac: str,
    session: Session = Depends(get_session),
) -> dict:
    mac = require_mac(mac)
    guest = get_latest_guest_by_mac(session, mac)
    if guest is None:
        return {"authorized": False, "mac_address": mac}
    return {
        "authorized": guest.expires_at > utcnow(),
        "mac_address": mac,
        "expires_at": guest.expires_at.isoformat(),
        "auth_count": guest.auth_count,
    }


# --- Job trigger ---


def _check_cron_secret(request: Request, secret: str | None, cfg: Settings) -> None:
    if not cfg.cron_secret:
        return
    provided = secret
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        provided = auth_header[7:]
    if not provided or not secrets.compare_digest(provided, cfg.cron_secret):
        raise AuthenticationError()


@router.api_route("/cron", methods=["GET", "POST"])
async def run_cron(
    request: Request,
    job: str = "all",
    secret: str | None = None,
    cfg: Settings = Depends(get_settings),
    scheduler: ReconciliationScheduler = Depends(get_scheduler),
) -> dict:
    _check_cron_secret(request, secret, cfg)
    timestamp = utcnow().isoformat()

    if job == "all":
        results = await scheduler.run_all()
        return {
            "success": all(r.success for r in results.values()),
            "timestamp": timestamp,
            "results": {name: r.as_dict() for name, r in results.items()},
        }
    if job not in JOB_NAMES:
        raise ValidationError(
            f"Unknown job '{job}'", {"valid_jobs": [*JOB_NAMES, "all"]}
        )
    result = await scheduler.run_job(job)
    return {"job": job, "timestamp": timestamp, **result.as_dict()}


# --- Admin ---


def _load_guest(session: Session, guest_id: int) -> Guest:
    guest = get_guest(session, guest_id)
    if guest is None:
        raise NotFoundError("Guest not found")
    return guest


@router.get("/admin/guests")
def admin_list_guests(
    active_only: bool = False,
    session: Session = Depends(get_session),
) -> list[Guest]:
    return list_guests(session, active_only=active_only)


@router.post("/admin/guests/revoke")
async def admin_revoke_guest(
    body: GuestActionRequest,
    request: Request,
    session: Session = Depends(get_session),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
) -> dict:
    guest = _load_guest(session, body.guest_id)
    controller_ok = await orchestrator.revoke_guest(session, guest)
    log_revoke(
        session,
        guest_id=guest.id,
        user_id=guest.user_id,
        mac_address=guest.mac_address or None,
        automatic=False,
        ip_address=client_ip(request),
    )
    message = "Guest access revoked"
    if not controller_ok and guest.mac_address:
        message += " (controller revoke failed, will retry)"
    return {"success": True, "message": message, "controller_revoked": controller_ok}


@router.post("/admin/guests/extend")
async def admin_extend_guest(
    body: ExtendGuestRequest,
    session: Session = Depends(get_session),
    orchestrator: AuthorizationOrchestrator = Depends(get_orchestrator),
    cfg: Settings = Depends(get_settings),
) -> dict:
    if not 1 <= body.days <= cfg.max_extend_days:
        raise ValidationError(f"Days must be between 1 and {cfg.max_extend_days}")
    guest = _load_guest(session, body.guest_id)
    controller_ok = await orchestrator.extend_guest(session, guest, body.days)
    log_extend(
        session,
        guest_id=guest.id,
        user_id=guest.user_id,
        mac_address=guest.mac_address or None,
        new_expires_at=guest.expires_at,
    )
    return {
        "success": True,
        "message": f"Access extended by {body.days} day(s)",
        "expires_at": guest.expires_at.isoformat(),
        "controller_authorized": controller_ok,
    }


@router.patch("/admin/guests/{guest_id}")
def admin_update_guest(
    guest_id: int,
    body: UpdateGuestRequest,
    session: Session = Depends(get_session),
) -> Guest:
    guest = set_nickname(session, guest_id, body.nickname)
    if guest is None:
        raise NotFoundError("Guest not found")
    return guest


@router.get("/admin/controller/status")
async def admin_controller_status(
    cfg: Settings = Depends(get_settings),
) -> dict:
    checked_at: datetime = utcnow()
    if cfg.controller_mode == "unifi":
        if not cfg.unifi_password:
            return {
                "mode": "unifi",
                "success": False,
                "message": "UniFi credentials not configured",
                "checked_at": checked_at.isoformat(),
            }
        result = await test_unifi(
            url=cfg.unifi_url,
            username=cfg.unifi_username,
            password=cfg.unifi_password,
            site=cfg.unifi_site,
            verify_ssl=cfg.unifi_verify_ssl,
        )
        return {
            "mode": "unifi",
            "success": result.success,
            "message": result.message,
            "device_count": result.device_count,
            "checked_at": checked_at.isoformat(),
        }
    if cfg.controller_mode == "mock":
        return {
            "mode": "mock",
            "success": True,
            "message": "Mock controller active",
            "checked_at": checked_at.isoformat(),
        }
    return {
        "mode": cfg.controller_mode,
        "success": False,
        "message": "No network controller configured",
        "checked_at": checked_at.isoformat(),
    }
