import os
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret-value")
os.environ.setdefault("DATABASE_URL", os.getenv("TEST_DATABASE_URL", "postgresql://localhost/forexdesk_test"))

from db import StorageError  # noqa: E402
from entitlements import EntitlementEngine  # noqa: E402
from models import (  # noqa: E402
    Account,
    PaymentStatus,
    PendingPayment,
    RequestStatus,
    SupportRequest,
)
from payments import PaymentReconciler  # noqa: E402
from plans import PlanPolicy, build_plan_policy  # noqa: E402
from support import SupportDesk  # noqa: E402

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class MemoryStore:
    """In-process account store with the same conditional-update contract as ``db``.

    ``read_delay`` widens the gap between a read and the following write so
    concurrent callers actually interleave.
    """

    def __init__(self, read_delay: float = 0.0) -> None:
        self._lock = threading.Lock()
        self.read_delay = read_delay
        self.fail = False
        self.accounts: dict[str, Account] = {}
        self.payments: dict[str, PendingPayment] = {}
        self.requests: dict[str, SupportRequest] = {}
        self.uploads: dict[str, dict[str, Any]] = {}
        self.rate_limits: dict[tuple[str, datetime], int] = {}
        self.consume_calls = 0

    def _check(self) -> None:
        if self.fail:
            raise StorageError("store unavailable")

    def put_account(self, account: Account) -> None:
        self.accounts[account.id] = account

    def get_account(self, user_id: str, *, timeout: float | None = None) -> Account | None:
        self._check()
        with self._lock:
            account = self.accounts.get(user_id)
        if self.read_delay:
            if timeout is not None and self.read_delay > timeout:
                # Behaves like a PostgreSQL statement_timeout cancelling the read.
                time.sleep(timeout)
                raise StorageError("canceling statement due to statement timeout")
            time.sleep(self.read_delay)
        return account

    def insert_account(self, user_id: str, plan: str, now: datetime, *, timeout: float | None = None) -> bool:
        self._check()
        with self._lock:
            if user_id in self.accounts:
                return False
            self.accounts[user_id] = Account(
                id=user_id,
                plan=plan,
                plan_start=now,
                usage_count=0,
                usage_window_start=now,
                created_at=now,
            )
            return True

    def reset_usage_window(
        self,
        user_id: str,
        *,
        expected_window_start: datetime,
        now: datetime,
        timeout: float | None = None,
    ) -> bool:
        self._check()
        with self._lock:
            account = self.accounts.get(user_id)
            if account is None or account.usage_window_start != expected_window_start:
                return False
            self.accounts[user_id] = replace(account, usage_count=0, usage_window_start=now)
            return True

    def consume_usage(
        self,
        user_id: str,
        *,
        plan: str,
        plan_start: datetime,
        window_start: datetime,
        limit: int | None,
        timeout: float | None = None,
    ) -> int | None:
        self._check()
        with self._lock:
            self.consume_calls += 1
            account = self.accounts.get(user_id)
            if (
                account is None
                or account.plan != plan
                or account.plan_start != plan_start
                or account.usage_window_start != window_start
                or (limit is not None and account.usage_count >= limit)
            ):
                return None
            self.accounts[user_id] = replace(account, usage_count=account.usage_count + 1)
            return account.usage_count + 1

    def set_account_plan(self, user_id: str, plan: str, now: datetime) -> Account:
        self._check()
        with self._lock:
            account = Account(
                id=user_id,
                plan=plan,
                plan_start=now,
                usage_count=0,
                usage_window_start=now,
                created_at=getattr(self.accounts.get(user_id), "created_at", now),
            )
            self.accounts[user_id] = account
            return account

    def delete_account(self, user_id: str) -> bool:
        self._check()
        with self._lock:
            if self.accounts.pop(user_id, None) is None:
                return False
            self.payments = {k: v for k, v in self.payments.items() if v.user_id != user_id}
            self.requests = {k: v for k, v in self.requests.items() if v.user_id != user_id}
            self.uploads = {k: v for k, v in self.uploads.items() if v["user_id"] != user_id}
            return True

    def insert_pending_payment(
        self, *, reference: str, user_id: str, requested_plan: str, now: datetime
    ) -> PendingPayment | None:
        self._check()
        with self._lock:
            if reference in self.payments:
                return None
            payment = PendingPayment(
                reference=reference,
                user_id=user_id,
                requested_plan=requested_plan,
                status=PaymentStatus.PENDING,
                submitted_at=now,
            )
            self.payments[reference] = payment
            return payment

    def get_pending_payment(self, reference: str) -> PendingPayment | None:
        self._check()
        return self.payments.get(reference)

    def approve_pending_payment(
        self, reference: str, *, notes: str | None, now: datetime
    ) -> tuple[PendingPayment | None, Account | None]:
        self._check()
        with self._lock:
            payment = self.payments.get(reference)
            if payment is None:
                return None, None
            if payment.status is not PaymentStatus.PENDING:
                return payment, None
            account = Account(
                id=payment.user_id,
                plan=payment.requested_plan,
                plan_start=now,
                usage_count=0,
                usage_window_start=now,
            )
            payment = replace(
                payment,
                status=PaymentStatus.APPROVED,
                verified_at=now,
                notes=notes if notes is not None else payment.notes,
            )
            self.accounts[account.id] = account
            self.payments[reference] = payment
            return payment, account

    def list_pending_payments(
        self,
        *,
        status: PaymentStatus | None = None,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[PendingPayment]:
        self._check()
        rows = [
            p
            for p in self.payments.values()
            if (status is None or p.status is status) and (user_id is None or p.user_id == user_id)
        ]
        return sorted(rows, key=lambda p: p.submitted_at)[:limit]

    def insert_support_request(
        self,
        *,
        request_id: str,
        user_id: str,
        topic: str,
        message: str,
        image_ref: str | None,
        status: RequestStatus,
        reply: str | None,
        reply_source: str | None,
        now: datetime,
    ) -> SupportRequest:
        self._check()
        request = SupportRequest(
            id=request_id,
            user_id=user_id,
            topic=topic,
            message=message,
            status=status,
            created_at=now,
            image_ref=image_ref,
            reply=reply,
            reply_source=reply_source,
            replied_at=now if reply is not None else None,
        )
        self.requests[request_id] = request
        return request

    def set_support_reply(
        self, request_id: str, *, reply: str, reply_source: str, now: datetime
    ) -> SupportRequest | None:
        self._check()
        request = self.requests.get(request_id)
        if request is None:
            return None
        request = replace(
            request,
            reply=reply,
            reply_source=reply_source,
            status=RequestStatus.ANSWERED,
            replied_at=now,
        )
        self.requests[request_id] = request
        return request

    def fetch_support_requests(
        self,
        *,
        user_id: str | None = None,
        status: RequestStatus | None = None,
        limit: int = 50,
    ) -> list[SupportRequest]:
        self._check()
        rows = [
            r
            for r in self.requests.values()
            if (user_id is None or r.user_id == user_id) and (status is None or r.status is status)
        ]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)[:limit]

    def insert_upload(
        self,
        *,
        upload_id: str,
        user_id: str,
        file_ref: str,
        content_type: str | None,
        size_bytes: int,
        now: datetime,
    ) -> None:
        self._check()
        self.uploads[upload_id] = {
            "user_id": user_id,
            "file_ref": file_ref,
            "content_type": content_type,
            "size_bytes": size_bytes,
            "uploaded_at": now,
        }

    def list_upload_refs(self, user_id: str) -> list[str]:
        self._check()
        return [u["file_ref"] for u in self.uploads.values() if u["user_id"] == user_id]

    def increment_rate_limit(self, key: str, window_start: datetime) -> int:
        self._check()
        with self._lock:
            count = self.rate_limits.get((key, window_start), 0) + 1
            self.rate_limits[(key, window_start)] = count
            return count

    def prune_rate_limits(self, before: datetime) -> int:
        self._check()
        with self._lock:
            stale = [k for k in self.rate_limits if k[1] < before]
            for k in stale:
                del self.rate_limits[k]
            return len(stale)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str | None, str]] = []

    def notify(self, chat_id: str | None, text: str) -> bool:
        if self.fail:
            # A real notifier swallows delivery errors; this one reports them as not sent.
            return False
        self.sent.append((chat_id, text))
        return True

    def notify_admin(self, text: str) -> bool:
        return self.notify("admin", text)


def make_account(
    user_id: str = "u1",
    *,
    plan: str = "trial",
    plan_start: datetime = T0,
    usage_count: int = 0,
    usage_window_start: datetime | None = None,
) -> Account:
    return Account(
        id=user_id,
        plan=plan,
        plan_start=plan_start,
        usage_count=usage_count,
        usage_window_start=usage_window_start or plan_start,
    )


@pytest.fixture()
def policy() -> PlanPolicy:
    return build_plan_policy(
        trial_duration_hours=24,
        trial_limit=15,
        starter_limit=5,
        pro_limit=10,
        plan_duration_days=30,
        catalog={
            "premium": {"weekly_limit": 50, "duration_days": 30},
            "unlimited": {"weekly_limit": None, "duration_days": None},
        },
    )


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def engine(store: MemoryStore, policy: PlanPolicy) -> EntitlementEngine:
    return EntitlementEngine(store, policy, decision_timeout=5.0, max_attempts=5)


@pytest.fixture()
def reconciler(store: MemoryStore, engine: EntitlementEngine, notifier: RecordingNotifier) -> PaymentReconciler:
    return PaymentReconciler(store, engine, notifier)


@pytest.fixture()
def desk(store: MemoryStore, notifier: RecordingNotifier) -> SupportDesk:
    return SupportDesk(store, notifier)


@pytest.fixture()
def hours():
    def _at(offset: float) -> datetime:
        return T0 + timedelta(hours=offset)

    return _at


@pytest.fixture()
def api(
    monkeypatch: pytest.MonkeyPatch,
    store: MemoryStore,
    policy: PlanPolicy,
    engine: EntitlementEngine,
    reconciler: PaymentReconciler,
    desk: SupportDesk,
    notifier: RecordingNotifier,
    tmp_path,
) -> Iterator[Any]:
    """FastAPI test client wired to the in-memory store."""
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(main, "_store", lambda: store)
    monkeypatch.setattr(main, "_policy", lambda: policy)
    monkeypatch.setattr(main, "_engine", lambda: engine)
    monkeypatch.setattr(main, "_reconciler", lambda: reconciler)
    monkeypatch.setattr(main, "_desk", lambda: desk)
    monkeypatch.setattr(main, "_notifier", lambda: notifier)
    monkeypatch.setattr(main, "generate_reply", lambda topic, message, image_ref=None: f"[{topic}] ok")
    client = TestClient(main.app)
    try:
        yield client
    finally:
        client.close()
