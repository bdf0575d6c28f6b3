"""Entitlement engine: the single place that decides whether a user may act.

Every gated action goes through ``EntitlementEngine.check_and_consume``.
Per-account serialization comes from the store's conditional updates rather
than from in-process locks, so several service instances can share one
database. A consumed unit is never handed back: if the caller disappears or
the gated action fails after a successful decision, the unit stays spent.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import config
from db import StorageError
from models import Account, AccountStatus, Decision, DenialReason
from plans import (
    PLAN_TRIAL,
    Bounded,
    PlanPolicy,
    is_trial_valid,
    load_plan_policy,
    window_is_stale,
)

logger = logging.getLogger("forexdesk.entitlements")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class DecisionTimeout(StorageError):
    """The decision budget ran out before the store answered."""


def _budget(deadline: float | None) -> float | None:
    """Seconds left before ``deadline``; raises once nothing is left."""
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DecisionTimeout("Entitlement decision timed out.")
    return remaining


class EntitlementEngine:
    """Admission and quota metering over an account store.

    ``store`` is anything exposing the account functions of ``db``:
    ``get_account``, ``insert_account``, ``reset_usage_window`` and
    ``consume_usage``.
    """

    def __init__(
        self,
        store: Any,
        policy: PlanPolicy | None = None,
        *,
        decision_timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or load_plan_policy()
        self.decision_timeout = (
            config.entitlement_timeout_seconds() if decision_timeout is None else decision_timeout
        )
        self.max_attempts = config.entitlement_max_attempts() if max_attempts is None else max_attempts

    def get_or_create(self, user_id: str, now: datetime | None = None) -> Account:
        """Return the account, creating a default trial account on first reference.

        A missing row is the normal first-contact case. Only storage failures
        raise (``StorageError``).
        """
        return self._load(user_id, now or _now_utc())

    def _load(self, user_id: str, now: datetime, deadline: float | None = None) -> Account:
        account = self.store.get_account(user_id, timeout=_budget(deadline))
        if account is not None:
            return account
        if self.store.insert_account(user_id, PLAN_TRIAL, now, timeout=_budget(deadline)):
            logger.info("Created trial account: %s", user_id)
        # Either we inserted it or a concurrent request did.
        account = self.store.get_account(user_id, timeout=_budget(deadline))
        if account is None:
            raise StorageError(f"Account {user_id} vanished after insert.")
        return account

    def start_trial(self, user_id: str, now: datetime | None = None) -> tuple[Account, bool]:
        """Open a trial for a new user. Existing accounts are left untouched."""
        now = now or _now_utc()
        created = self.store.insert_account(user_id, PLAN_TRIAL, now)
        return self.get_or_create(user_id, now), created

    def check_and_consume(self, user_id: str, now: datetime | None = None) -> Decision:
        now = now or _now_utc()
        deadline = time.monotonic() + self.decision_timeout
        try:
            for _ in range(max(self.max_attempts, 1)):
                decision = self._attempt(user_id, now, deadline)
                if decision is not None:
                    if not decision.allowed:
                        logger.info("Denied %s: %s", user_id, decision.reason.value)
                    return decision
        except DecisionTimeout:
            logger.error("Entitlement check for %s ran past %.2fs.", user_id, self.decision_timeout)
            return Decision.deny(DenialReason.STORAGE_ERROR)
        except StorageError:
            logger.exception("Entitlement check failed for %s.", user_id)
            return Decision.deny(DenialReason.STORAGE_ERROR)
        logger.error("Entitlement check for %s gave up after contention.", user_id)
        return Decision.deny(DenialReason.STORAGE_ERROR)

    def _attempt(self, user_id: str, now: datetime, deadline: float) -> Decision | None:
        """One read-evaluate-write pass; None means the account moved under us.

        Every store call gets whatever is left of the decision budget as its
        timeout, and none is made once the budget is spent.
        """
        account = self._load(user_id, now, deadline)
        quota = self.policy.limit_for(account.plan)

        if self.policy.is_trial(account.plan):
            if not is_trial_valid(account.plan_start, now, self.policy.trial_duration_hours):
                return Decision.deny(DenialReason.TRIAL_EXPIRED, quota, plan=account.plan)
        else:
            validity = self.policy.validity(account.plan, account.plan_start, now)
            if validity is not None and not validity.valid:
                return Decision.deny(DenialReason.PLAN_EXPIRED, quota, plan=account.plan)

        count = account.usage_count
        window_start = account.usage_window_start
        window = self.policy.usage_window
        if window_is_stale(window_start, now, window):
            if not self.store.reset_usage_window(
                user_id,
                expected_window_start=window_start,
                now=now,
                timeout=_budget(deadline),
            ):
                return None
            logger.info("Usage window rolled over for %s.", user_id)
            count, window_start = 0, now

        reset_at = window_start + window
        if not quota.allows(count):
            return Decision.deny(
                DenialReason.QUOTA_EXCEEDED,
                quota,
                usage_count=count,
                plan=account.plan,
                reset_at=reset_at,
            )

        new_count = self.store.consume_usage(
            user_id,
            plan=account.plan,
            plan_start=account.plan_start,
            window_start=window_start,
            limit=quota.limit if isinstance(quota, Bounded) else None,
            timeout=_budget(deadline),
        )
        if new_count is None:
            return None
        return Decision.allow(quota, new_count, account.plan, reset_at)

    def status(self, user_id: str, now: datetime | None = None) -> AccountStatus:
        """Read-only view of an account's entitlement; never consumes quota."""
        now = now or _now_utc()
        account = self.get_or_create(user_id, now)
        quota = self.policy.limit_for(account.plan)
        trial_active = False
        expired = False
        expires_at = None
        days_remaining = None
        if self.policy.is_trial(account.plan):
            trial_active = is_trial_valid(account.plan_start, now, self.policy.trial_duration_hours)
            expired = not trial_active
        else:
            validity = self.policy.validity(account.plan, account.plan_start, now)
            if validity is not None:
                expired = not validity.valid
                expires_at = validity.expires_at
                days_remaining = validity.days_remaining

        window = self.policy.usage_window
        if window_is_stale(account.usage_window_start, now, window):
            usage_count = 0
            window_resets_at = now + window
        else:
            usage_count = account.usage_count
            window_resets_at = account.usage_window_start + window
        return AccountStatus(
            account=account,
            trial_active=trial_active,
            expired=expired,
            quota=quota,
            usage_count=usage_count,
            window_resets_at=window_resets_at,
            plan_expires_at=expires_at,
            days_remaining=days_remaining,
        )
