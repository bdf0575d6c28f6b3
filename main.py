from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
import db
from auth import AdminNotConfigured, verify_admin_secret
from db import StorageError
from entitlements import EntitlementEngine
from models import (
    Account,
    AccountStatus,
    Decision,
    DenialReason,
    PaymentError,
    PaymentStatus,
    PendingPayment,
    RequestStatus,
    SupportRequest,
)
from notifier import TelegramNotifier
from payments import PaymentReconciler
from plans import PlanPolicy, Unbounded, load_plan_policy, normalize_plan
from prompts import generate_reply, is_known_topic
from storage import UploadRejected, delete_uploads, public_url, save_upload
from support import SupportDesk

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("forexdesk")

ESCALATION_TOPIC = "emergency"
RATE_LIMIT_RETENTION = timedelta(hours=1)


class StartTrialRequest(BaseModel):
    user_id: str = Field(min_length=1)


class ChatRequest(BaseModel):
    user_id: str = Field(min_length=1)
    topic: str
    message: str
    image_ref: str | None = None


class SupportRequestCreate(BaseModel):
    user_id: str = Field(min_length=1)
    message: str
    topic: str = ESCALATION_TOPIC
    image_ref: str | None = None


class PaymentSubmitRequest(BaseModel):
    user_id: str = Field(min_length=1)
    plan: str
    reference: str


class ApprovePaymentRequest(BaseModel):
    notes: str | None = None


class ActivateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    plan: str


class AdminReplyRequest(BaseModel):
    text: str


class UsageMeta(BaseModel):
    plan: str
    count: int
    limit: int | None
    unbounded: bool
    reset_at: str | None


class UserStatusResponse(BaseModel):
    user_id: str
    plan: str
    trial_active: bool
    expired: bool
    requests_week: int
    limit: int | None
    unbounded: bool
    window_resets_at: str
    plan_expires_at: str | None = None
    days_remaining: int | None = None


class StartTrialResponse(BaseModel):
    success: bool
    created: bool
    status: UserStatusResponse


class UploadResponse(BaseModel):
    success: bool
    filename: str


class SupportRequestResponse(BaseModel):
    id: str
    user_id: str
    topic: str
    message: str
    status: str
    created_at: str
    image_ref: str | None = None
    reply: str | None = None
    reply_source: str | None = None
    replied_at: str | None = None


class ChatResponse(BaseModel):
    reply: str
    request_id: str | None
    meta: UsageMeta


class EscalationResponse(BaseModel):
    request: SupportRequestResponse
    meta: UsageMeta


class PaymentResponse(BaseModel):
    reference: str
    user_id: str
    requested_plan: str
    status: str
    submitted_at: str
    verified_at: str | None = None
    notes: str | None = None


class AccountResponse(BaseModel):
    id: str
    plan: str
    plan_start: str
    usage_count: int
    usage_window_start: str


class ApprovalResponse(BaseModel):
    payment: PaymentResponse
    account: AccountResponse


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if isinstance(value, datetime) else None


def _error(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"code": code, "message": message, **extra}


@lru_cache(maxsize=1)
def _store() -> Any:
    return db


@lru_cache(maxsize=1)
def _policy() -> PlanPolicy:
    return load_plan_policy()


@lru_cache(maxsize=1)
def _notifier() -> TelegramNotifier:
    return TelegramNotifier.from_env()


@lru_cache(maxsize=1)
def _engine() -> EntitlementEngine:
    return EntitlementEngine(_store(), _policy())


@lru_cache(maxsize=1)
def _reconciler() -> PaymentReconciler:
    return PaymentReconciler(_store(), _engine(), _notifier())


@lru_cache(maxsize=1)
def _desk() -> SupportDesk:
    return SupportDesk(_store(), _notifier())


def _rate_limits() -> tuple[int, int]:
    return (
        config.int_env("RATE_LIMIT_USER_PER_MINUTE", 30),
        config.int_env("RATE_LIMIT_IP_PER_MINUTE", 120),
    )


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def _rate_limit(request: Request, user_id: str) -> None:
    window_start = _now_utc().replace(second=0, microsecond=0)
    user_limit, ip_limit = _rate_limits()
    store = _store()
    if random.random() < config.float_env("RATE_LIMIT_PRUNE_SAMPLE", 0.01):
        pruned = store.prune_rate_limits(window_start - RATE_LIMIT_RETENTION)
        if pruned:
            logger.info("Pruned %s rate limit rows.", pruned)
    if store.increment_rate_limit(f"user:{user_id}", window_start) > user_limit:
        raise HTTPException(
            status_code=429,
            detail=_error("RateLimited", "Too many requests. Please slow down and try again."),
        )
    ip = _get_client_ip(request)
    if ip and store.increment_rate_limit(f"ip:{ip}", window_start) > ip_limit:
        raise HTTPException(
            status_code=429,
            detail=_error("RateLimited", "Too many requests from this network. Please try again later."),
        )


def _require_admin(request: Request) -> None:
    try:
        allowed = verify_admin_secret(request.headers.get("x-admin-secret"), config.admin_secret())
    except AdminNotConfigured as exc:
        raise HTTPException(
            status_code=503,
            detail=_error("AdminDisabled", "Admin endpoints are disabled."),
        ) from exc
    if not allowed:
        raise HTTPException(status_code=403, detail=_error("NotAuthorized", "Forbidden."))


def _usage_meta(decision: Decision) -> UsageMeta:
    return UsageMeta(
        plan=decision.plan or "",
        count=decision.usage_count or 0,
        limit=decision.limit,
        unbounded=decision.unbounded,
        reset_at=_iso(decision.reset_at),
    )


def _raise_for_denial(decision: Decision) -> None:
    if decision.allowed:
        return
    reason = decision.reason
    if reason is DenialReason.TRIAL_EXPIRED:
        raise HTTPException(
            status_code=403,
            detail=_error(reason.value, "Trial expired.", plan=decision.plan),
        )
    if reason is DenialReason.PLAN_EXPIRED:
        raise HTTPException(
            status_code=403,
            detail=_error(reason.value, "Plan expired.", plan=decision.plan),
        )
    if reason is DenialReason.QUOTA_EXCEEDED:
        raise HTTPException(
            status_code=429,
            detail=_error(
                reason.value,
                "Request limit reached.",
                plan=decision.plan,
                limit=decision.limit,
                reset_at=_iso(decision.reset_at),
            ),
        )
    raise HTTPException(
        status_code=503,
        detail=_error(DenialReason.STORAGE_ERROR.value, "Service temporarily unavailable."),
    )


def _status_response(status: AccountStatus) -> UserStatusResponse:
    return UserStatusResponse(
        user_id=status.account.id,
        plan=status.account.plan,
        trial_active=status.trial_active,
        expired=status.expired,
        requests_week=status.usage_count,
        limit=getattr(status.quota, "limit", None),
        unbounded=isinstance(status.quota, Unbounded),
        window_resets_at=status.window_resets_at.isoformat(),
        plan_expires_at=_iso(status.plan_expires_at),
        days_remaining=status.days_remaining,
    )


def _support_response(request: SupportRequest) -> SupportRequestResponse:
    return SupportRequestResponse(
        id=request.id,
        user_id=request.user_id,
        topic=request.topic,
        message=request.message,
        status=request.status.value,
        created_at=request.created_at.isoformat(),
        image_ref=request.image_ref,
        reply=request.reply,
        reply_source=request.reply_source,
        replied_at=_iso(request.replied_at),
    )


def _payment_response(payment: PendingPayment) -> PaymentResponse:
    return PaymentResponse(
        reference=payment.reference,
        user_id=payment.user_id,
        requested_plan=payment.requested_plan,
        status=payment.status.value,
        submitted_at=payment.submitted_at.isoformat(),
        verified_at=_iso(payment.verified_at),
        notes=payment.notes,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        plan=account.plan,
        plan_start=account.plan_start.isoformat(),
        usage_count=account.usage_count,
        usage_window_start=account.usage_window_start.isoformat(),
    )


def _require_known_plan(plan: str) -> str:
    normalized = normalize_plan(plan)
    if normalized not in _policy().paid_plans():
        raise HTTPException(status_code=400, detail=_error("UnknownPlan", "Unsupported plan."))
    return normalized


config.validate_env()

app = FastAPI(title="Forex Support Desk Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.parse_origins(config.env("CORS_ORIGINS")) or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": _error(DenialReason.STORAGE_ERROR.value, "Service temporarily unavailable.")},
    )


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/user/{user_id}", response_model=UserStatusResponse)
def user_status(user_id: str) -> UserStatusResponse:
    return _status_response(_engine().status(user_id))


@app.post("/api/start-trial", response_model=StartTrialResponse)
def start_trial(payload: StartTrialRequest) -> StartTrialResponse:
    engine = _engine()
    now = _now_utc()
    _, created = engine.start_trial(payload.user_id, now)
    if created:
        hours = engine.policy.trial_duration_hours
        _notifier().notify(payload.user_id, f"Your free trial is active for the next {hours} hours.")
        _notifier().notify_admin(f"User {payload.user_id} started a trial.")
    return StartTrialResponse(
        success=True,
        created=created,
        status=_status_response(engine.status(payload.user_id, now)),
    )


@app.post("/api/upload", response_model=UploadResponse)
def upload_image(
    raw_request: Request,
    user_id: str = Form(...),
    image: UploadFile = File(...),
) -> UploadResponse:
    _rate_limit(raw_request, user_id)
    _engine().get_or_create(user_id)
    max_bytes = config.upload_max_bytes()
    data = image.file.read(max_bytes + 1)
    try:
        file_ref = save_upload(_store(), user_id, data, image.content_type, max_bytes=max_bytes)
    except UploadRejected as exc:
        raise HTTPException(status_code=400, detail=_error("UploadRejected", str(exc))) from exc
    return UploadResponse(success=True, filename=file_ref)


@app.post("/api/chat", response_model=ChatResponse)
def chat(payload: ChatRequest, raw_request: Request) -> ChatResponse:
    topic = payload.topic.strip()
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail=_error("MissingMessage", "Missing message."))
    if not is_known_topic(topic):
        raise HTTPException(status_code=400, detail=_error("UnknownTopic", "Unknown topic."))
    _rate_limit(raw_request, payload.user_id)

    decision = _engine().check_and_consume(payload.user_id)
    _raise_for_denial(decision)

    image_ref = payload.image_ref.strip() if payload.image_ref else None
    try:
        reply = generate_reply(topic, message, public_url(image_ref) if image_ref else None)
    except Exception as exc:
        logger.exception("Completion failed for %s.", payload.user_id)
        raise HTTPException(
            status_code=502,
            detail=_error("CompletionFailed", "Automatic reply failed. Please try again."),
        ) from exc

    request_id = None
    try:
        entry = _desk().record_auto_reply(payload.user_id, topic, message, image_ref, reply)
        request_id = entry.id
    except StorageError:
        logger.exception("Failed to record conversation for %s.", payload.user_id)
    return ChatResponse(reply=reply, request_id=request_id, meta=_usage_meta(decision))


@app.post("/api/support/requests", response_model=EscalationResponse)
def open_support_request(payload: SupportRequestCreate, raw_request: Request) -> EscalationResponse:
    topic = payload.topic.strip()
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail=_error("MissingMessage", "Missing message."))
    if topic != ESCALATION_TOPIC and not is_known_topic(topic):
        raise HTTPException(status_code=400, detail=_error("UnknownTopic", "Unknown topic."))
    _rate_limit(raw_request, payload.user_id)

    decision = _engine().check_and_consume(payload.user_id)
    _raise_for_denial(decision)

    image_ref = payload.image_ref.strip() if payload.image_ref else None
    request = _desk().open_request(payload.user_id, topic, message, image_ref)
    return EscalationResponse(request=_support_response(request), meta=_usage_meta(decision))


@app.get("/api/user/{user_id}/history")
def conversation_history(user_id: str, limit: int = 50) -> dict[str, Any]:
    entries = _desk().history(user_id, limit=max(1, min(limit, 200)))
    return {"entries": [_support_response(entry).model_dump() for entry in entries]}


@app.post("/api/payments", response_model=PaymentResponse)
def submit_payment(payload: PaymentSubmitRequest, raw_request: Request) -> PaymentResponse:
    reference = payload.reference.strip()
    if not reference:
        raise HTTPException(status_code=400, detail=_error("MissingReference", "Missing transaction reference."))
    plan = _require_known_plan(payload.plan)
    _rate_limit(raw_request, payload.user_id)
    result = _reconciler().submit_payment(payload.user_id, plan, reference)
    if result.error is PaymentError.DUPLICATE_REFERENCE:
        raise HTTPException(
            status_code=409,
            detail=_error(result.error.value, "This transaction reference was already submitted."),
        )
    if result.error is not None:
        raise HTTPException(status_code=503, detail=_error(result.error.value, "Service temporarily unavailable."))
    return _payment_response(result.payment)


@app.get("/api/admin/payments")
def list_payments(raw_request: Request, status: str | None = "pending", user_id: str | None = None) -> dict[str, Any]:
    _require_admin(raw_request)
    status_filter = None
    if status and status != "all":
        try:
            status_filter = PaymentStatus(status)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=_error("InvalidStatus", "Unsupported status.")) from exc
    payments = _reconciler().list_payments(status=status_filter, user_id=user_id)
    return {"payments": [_payment_response(payment).model_dump() for payment in payments]}


@app.post("/api/admin/payments/{reference}/approve", response_model=ApprovalResponse)
def approve_payment(
    reference: str,
    raw_request: Request,
    payload: ApprovePaymentRequest | None = None,
) -> ApprovalResponse:
    _require_admin(raw_request)
    result = _reconciler().approve_payment(reference, notes=payload.notes if payload else None)
    if result.error is PaymentError.NOT_FOUND:
        raise HTTPException(status_code=404, detail=_error(result.error.value, "Payment not found."))
    if result.error is PaymentError.ALREADY_APPROVED:
        raise HTTPException(status_code=409, detail=_error(result.error.value, "Payment already approved."))
    if result.error is not None:
        raise HTTPException(status_code=503, detail=_error(result.error.value, "Service temporarily unavailable."))
    return ApprovalResponse(
        payment=_payment_response(result.payment),
        account=_account_response(result.account),
    )


@app.post("/api/admin/activate", response_model=AccountResponse)
def activate(payload: ActivateRequest, raw_request: Request) -> AccountResponse:
    _require_admin(raw_request)
    plan = _require_known_plan(payload.plan)
    return _account_response(_reconciler().activate_plan(payload.user_id, plan))


@app.get("/api/admin/support/requests")
def support_queue(raw_request: Request, status: str | None = RequestStatus.AWAITING_ADMIN.value) -> dict[str, Any]:
    _require_admin(raw_request)
    status_filter = None
    if status and status != "all":
        try:
            status_filter = RequestStatus(status)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=_error("InvalidStatus", "Unsupported status.")) from exc
    requests = _desk().queue(status=status_filter)
    return {"requests": [_support_response(request).model_dump() for request in requests]}


@app.post("/api/admin/support/requests/{request_id}/reply", response_model=SupportRequestResponse)
def reply_to_request(request_id: str, payload: AdminReplyRequest, raw_request: Request) -> SupportRequestResponse:
    _require_admin(raw_request)
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail=_error("MissingReply", "Reply text is required."))
    request = _desk().reply(request_id, text)
    if request is None:
        raise HTTPException(status_code=404, detail=_error("RequestNotFound", "Support request not found."))
    return _support_response(request)


@app.delete("/api/admin/users/{user_id}")
def delete_user(user_id: str, raw_request: Request) -> dict[str, bool]:
    _require_admin(raw_request)
    store = _store()
    file_refs = store.list_upload_refs(user_id)
    if not store.delete_account(user_id):
        raise HTTPException(status_code=404, detail=_error("AccountNotFound", "Account not found."))
    delete_uploads(file_refs)
    logger.info("Deleted account %s and its records.", user_id)
    return {"deleted": True}
