"""Manual payment verification: pending claims and their approval."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from db import StorageError
from entitlements import EntitlementEngine
from models import Account, PaymentError, PaymentResult, PaymentStatus, PendingPayment
from plans import normalize_plan

logger = logging.getLogger("forexdesk.payments")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PaymentReconciler:
    def __init__(self, store: Any, engine: EntitlementEngine, notifier: Any) -> None:
        self.store = store
        self.engine = engine
        self.notifier = notifier

    def submit_payment(
        self,
        user_id: str,
        requested_plan: str,
        reference: str,
        now: datetime | None = None,
    ) -> PaymentResult:
        """Record a payment claim. Plan state is not touched until approval."""
        now = now or _now_utc()
        plan = normalize_plan(requested_plan)
        try:
            self.engine.get_or_create(user_id, now)
            payment = self.store.insert_pending_payment(
                reference=reference,
                user_id=user_id,
                requested_plan=plan,
                now=now,
            )
        except StorageError:
            logger.exception("Failed to store payment %s.", reference)
            return PaymentResult(error=PaymentError.STORAGE_ERROR)
        if payment is None:
            logger.warning("Duplicate payment reference submitted: %s", reference)
            return PaymentResult(error=PaymentError.DUPLICATE_REFERENCE)
        logger.info("Payment %s submitted by %s for %s.", reference, user_id, plan)
        self.notifier.notify_admin(
            f"New payment to verify: user {user_id}, plan {plan}, reference {reference}."
        )
        return PaymentResult(payment=payment)

    def approve_payment(
        self,
        reference: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> PaymentResult:
        """Apply a verified payment: plan change and approval land together."""
        now = now or _now_utc()
        try:
            payment, account = self.store.approve_pending_payment(reference, notes=notes, now=now)
        except StorageError:
            logger.exception("Failed to approve payment %s.", reference)
            return PaymentResult(error=PaymentError.STORAGE_ERROR)
        if payment is None:
            return PaymentResult(error=PaymentError.NOT_FOUND)
        if account is None:
            return PaymentResult(payment=payment, error=PaymentError.ALREADY_APPROVED)
        logger.info("Payment %s approved; %s moved to %s.", reference, account.id, account.plan)
        self.notifier.notify(
            account.id,
            f"Your payment was verified. Your {account.plan} plan is now active.",
        )
        return PaymentResult(payment=payment, account=account)

    def activate_plan(self, user_id: str, plan: str, now: datetime | None = None) -> Account:
        """Admin override: switch plans without a payment record."""
        now = now or _now_utc()
        account = self.store.set_account_plan(user_id, normalize_plan(plan), now)
        logger.info("Manually activated %s for %s.", account.plan, user_id)
        self.notifier.notify(user_id, f"Your {account.plan} plan has been activated.")
        self.notifier.notify_admin(f"User {user_id} has been manually activated on {account.plan}.")
        return account

    def list_payments(
        self,
        status: PaymentStatus | None = None,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[PendingPayment]:
        return self.store.list_pending_payments(status=status, user_id=user_id, limit=limit)
