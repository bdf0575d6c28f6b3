"""Plan policy: which quota and which validity rule apply to a plan.

Everything here is pure. ``load_plan_policy`` is the only function that reads
configuration, and it only builds a ``PlanPolicy`` value.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import config

PLAN_TRIAL = "trial"
PLAN_STARTER = "starter"
PLAN_PRO = "pro"
PLAN_ELITE = "elite"

USAGE_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class Bounded:
    limit: int

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError("Quota limit must not be negative.")

    def allows(self, count: int) -> bool:
        return count < self.limit


@dataclass(frozen=True)
class Unbounded:
    def allows(self, count: int) -> bool:
        return True


Quota = Bounded | Unbounded


@dataclass(frozen=True)
class PlanRule:
    quota: Quota
    duration_days: int | None = None


@dataclass(frozen=True)
class PlanValidity:
    valid: bool
    days_remaining: int
    expires_at: datetime


def normalize_plan(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().lower()


def is_trial_valid(plan_start: datetime, now: datetime, trial_duration_hours: int) -> bool:
    return now - plan_start < timedelta(hours=trial_duration_hours)


def is_paid_plan_valid(plan_start: datetime, now: datetime, plan_duration_days: int) -> PlanValidity:
    expires_at = plan_start + timedelta(days=plan_duration_days)
    if now >= expires_at:
        return PlanValidity(valid=False, days_remaining=0, expires_at=expires_at)
    return PlanValidity(valid=True, days_remaining=max((expires_at - now).days, 0), expires_at=expires_at)


def window_is_stale(usage_window_start: datetime, now: datetime, window: timedelta = USAGE_WINDOW) -> bool:
    return now - usage_window_start > window


@dataclass(frozen=True)
class PlanPolicy:
    rules: dict[str, PlanRule] = field(default_factory=dict)
    trial_duration_hours: int = 24
    usage_window: timedelta = USAGE_WINDOW

    def rule_for(self, plan: str) -> PlanRule | None:
        return self.rules.get(normalize_plan(plan))

    def limit_for(self, plan: str) -> Quota:
        # Unknown plans get nothing rather than falling back to another tier.
        rule = self.rule_for(plan)
        if rule is None:
            return Bounded(0)
        return rule.quota

    def is_known(self, plan: str) -> bool:
        return self.rule_for(plan) is not None

    def is_trial(self, plan: str) -> bool:
        return normalize_plan(plan) == PLAN_TRIAL

    def paid_plans(self) -> list[str]:
        return sorted(name for name in self.rules if name != PLAN_TRIAL)

    def validity(self, plan: str, plan_start: datetime, now: datetime) -> PlanValidity | None:
        """Expiry of a paid plan, or None for trial and non-expiring plans."""
        if self.is_trial(plan):
            return None
        rule = self.rule_for(plan)
        if rule is None or rule.duration_days is None:
            return None
        return is_paid_plan_valid(plan_start, now, rule.duration_days)


def _quota_from_config(value: Any) -> Quota:
    if value is None:
        return Unbounded()
    if isinstance(value, str) and value.strip().lower() in {"unlimited", "unbounded", "inf"}:
        return Unbounded()
    if isinstance(value, float) and math.isinf(value):
        return Unbounded()
    return Bounded(int(value))


def build_plan_policy(
    *,
    trial_duration_hours: int = 24,
    trial_limit: int = 5,
    starter_limit: int = 5,
    pro_limit: int = 10,
    plan_duration_days: int | None = 30,
    catalog: dict[str, Any] | None = None,
) -> PlanPolicy:
    rules: dict[str, PlanRule] = {
        PLAN_TRIAL: PlanRule(Bounded(trial_limit)),
        PLAN_STARTER: PlanRule(Bounded(starter_limit), plan_duration_days),
        PLAN_PRO: PlanRule(Bounded(pro_limit), plan_duration_days),
        PLAN_ELITE: PlanRule(Unbounded(), plan_duration_days),
    }
    for name, entry in (catalog or {}).items():
        key = normalize_plan(name)
        if not key or key == PLAN_TRIAL:
            raise ValueError("PLAN_CATALOG cannot redefine the trial plan.")
        if not isinstance(entry, dict):
            raise ValueError(f"Plan {name!r} must be an object.")
        if "weekly_limit" not in entry:
            raise ValueError(f"Plan {name!r} needs a weekly_limit (null for unlimited).")
        duration = entry.get("duration_days", plan_duration_days)
        rules[key] = PlanRule(
            quota=_quota_from_config(entry.get("weekly_limit")),
            duration_days=int(duration) if duration is not None else None,
        )
    return PlanPolicy(rules=rules, trial_duration_hours=trial_duration_hours)


def load_plan_policy() -> PlanPolicy:
    return build_plan_policy(
        trial_duration_hours=config.int_env("TRIAL_DURATION_HOURS", 24),
        trial_limit=config.int_env("TRIAL_WEEKLY_LIMIT", 5),
        starter_limit=config.int_env("STARTER_WEEKLY_LIMIT", 5),
        pro_limit=config.int_env("PRO_WEEKLY_LIMIT", 10),
        plan_duration_days=config.int_env("PLAN_DURATION_DAYS", 30),
        catalog=config.plan_catalog_overrides(),
    )
