from datetime import datetime, timedelta, timezone

import pytest

from plans import (
    Bounded,
    PlanPolicy,
    Unbounded,
    build_plan_policy,
    is_paid_plan_valid,
    is_trial_valid,
    load_plan_policy,
    window_is_stale,
)

START = datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_bounded_quota_allows_below_limit_only() -> None:
    quota = Bounded(3)
    assert quota.allows(2)
    assert not quota.allows(3)
    assert not Bounded(0).allows(0)


def test_unbounded_quota_always_allows() -> None:
    assert Unbounded().allows(10**9)


def test_negative_limit_is_rejected() -> None:
    with pytest.raises(ValueError):
        Bounded(-1)


def test_trial_validity_is_strict_at_the_boundary() -> None:
    assert is_trial_valid(START, START + timedelta(hours=23, minutes=59), 24)
    assert not is_trial_valid(START, START + timedelta(hours=24), 24)


def test_paid_plan_validity_reports_days_remaining() -> None:
    validity = is_paid_plan_valid(START, START + timedelta(days=10, hours=1), 30)
    assert validity.valid
    assert validity.days_remaining == 19
    assert validity.expires_at == START + timedelta(days=30)

    expired = is_paid_plan_valid(START, START + timedelta(days=30), 30)
    assert not expired.valid
    assert expired.days_remaining == 0


def test_window_rolls_only_after_seven_full_days() -> None:
    assert not window_is_stale(START, START + timedelta(days=7))
    assert window_is_stale(START, START + timedelta(days=7, seconds=1))


def test_unknown_plan_gets_zero_quota(policy: PlanPolicy) -> None:
    assert policy.limit_for("gold") == Bounded(0)
    assert policy.limit_for("") == Bounded(0)
    assert not policy.is_known("gold")


def test_plan_lookup_is_case_insensitive(policy: PlanPolicy) -> None:
    assert policy.limit_for("Premium") == Bounded(50)
    assert policy.limit_for(" TRIAL ") == Bounded(15)
    assert policy.is_trial("Trial")


def test_quota_and_expiry_are_independent(policy: PlanPolicy) -> None:
    assert policy.limit_for("elite") == Unbounded()
    assert policy.rule_for("elite").duration_days == 30
    assert policy.limit_for("unlimited") == Unbounded()
    assert policy.validity("unlimited", START, START + timedelta(days=400)) is None
    assert policy.validity("trial", START, START) is None


def test_paid_plans_excludes_trial(policy: PlanPolicy) -> None:
    assert policy.paid_plans() == ["elite", "premium", "pro", "starter", "unlimited"]


def test_catalog_requires_explicit_weekly_limit() -> None:
    with pytest.raises(ValueError):
        build_plan_policy(catalog={"gold": {"duration_days": 30}})


def test_catalog_cannot_redefine_trial() -> None:
    with pytest.raises(ValueError):
        build_plan_policy(catalog={"trial": {"weekly_limit": 100}})


def test_catalog_accepts_unlimited_keywords() -> None:
    policy = build_plan_policy(catalog={"vip": {"weekly_limit": "unlimited"}})
    assert policy.limit_for("vip") == Unbounded()
    assert policy.rule_for("vip").duration_days == 30


def test_load_plan_policy_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRIAL_DURATION_HOURS", "72")
    monkeypatch.setenv("TRIAL_WEEKLY_LIMIT", "3")
    monkeypatch.setenv("PRO_WEEKLY_LIMIT", "25")
    monkeypatch.setenv("PLAN_CATALOG", '{"basic": {"weekly_limit": 7, "duration_days": 14}}')

    policy = load_plan_policy()

    assert policy.trial_duration_hours == 72
    assert policy.limit_for("trial") == Bounded(3)
    assert policy.limit_for("pro") == Bounded(25)
    assert policy.rule_for("basic").duration_days == 14
