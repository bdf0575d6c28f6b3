from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from plans import Bounded, Quota, Unbounded


class DenialReason(str, Enum):
    TRIAL_EXPIRED = "TrialExpired"
    PLAN_EXPIRED = "PlanExpired"
    QUOTA_EXCEEDED = "QuotaExceeded"
    STORAGE_ERROR = "StorageError"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"


class PaymentError(str, Enum):
    DUPLICATE_REFERENCE = "DuplicatePaymentReference"
    NOT_FOUND = "PaymentNotFound"
    ALREADY_APPROVED = "PaymentAlreadyApproved"
    STORAGE_ERROR = "StorageError"


class RequestStatus(str, Enum):
    ANSWERED = "answered"
    AWAITING_ADMIN = "awaiting_admin"


@dataclass(frozen=True)
class Account:
    id: str
    plan: str
    plan_start: datetime
    usage_count: int
    usage_window_start: datetime
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Account:
        return cls(
            id=row["id"],
            plan=row["plan"],
            plan_start=row["plan_start"],
            usage_count=int(row["usage_count"]),
            usage_window_start=row["usage_window_start"],
            created_at=row.get("created_at"),
        )


@dataclass(frozen=True)
class PendingPayment:
    reference: str
    user_id: str
    requested_plan: str
    status: PaymentStatus
    submitted_at: datetime
    verified_at: datetime | None = None
    notes: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> PendingPayment:
        return cls(
            reference=row["reference"],
            user_id=row["user_id"],
            requested_plan=row["requested_plan"],
            status=PaymentStatus(row["status"]),
            submitted_at=row["submitted_at"],
            verified_at=row.get("verified_at"),
            notes=row.get("notes"),
        )


@dataclass(frozen=True)
class SupportRequest:
    id: str
    user_id: str
    topic: str
    message: str
    status: RequestStatus
    created_at: datetime
    image_ref: str | None = None
    reply: str | None = None
    reply_source: str | None = None
    replied_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> SupportRequest:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            topic=row["topic"],
            message=row["message"],
            status=RequestStatus(row["status"]),
            created_at=row["created_at"],
            image_ref=row.get("image_ref"),
            reply=row.get("reply"),
            reply_source=row.get("reply_source"),
            replied_at=row.get("replied_at"),
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of one entitlement check.

    A denial always carries its reason; ``quota`` is set whenever the plan's
    quota was resolved, so callers can render an accurate upgrade prompt.
    """

    allowed: bool
    reason: DenialReason | None = None
    quota: Quota | None = None
    usage_count: int | None = None
    plan: str | None = None
    reset_at: datetime | None = None

    @classmethod
    def allow(cls, quota: Quota, usage_count: int, plan: str, reset_at: datetime) -> Decision:
        return cls(True, None, quota, usage_count, plan, reset_at)

    @classmethod
    def deny(
        cls,
        reason: DenialReason,
        quota: Quota | None = None,
        *,
        usage_count: int | None = None,
        plan: str | None = None,
        reset_at: datetime | None = None,
    ) -> Decision:
        return cls(False, reason, quota, usage_count, plan, reset_at)

    @property
    def limit(self) -> int | None:
        if isinstance(self.quota, Bounded):
            return self.quota.limit
        return None

    @property
    def unbounded(self) -> bool:
        return isinstance(self.quota, Unbounded)


@dataclass(frozen=True)
class AccountStatus:
    account: Account
    trial_active: bool
    expired: bool
    quota: Quota
    usage_count: int
    window_resets_at: datetime
    plan_expires_at: datetime | None = None
    days_remaining: int | None = None


@dataclass(frozen=True)
class PaymentResult:
    payment: PendingPayment | None = None
    error: PaymentError | None = None
    account: Account | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
