"""PostgreSQL account store.

Every function opens its own connection, so each call is one transaction.
Conditional updates return ``None``/``False`` when their guard did not match;
callers treat that as "state moved on, re-read", never as an error. Any
driver failure surfaces as ``StorageError``.
"""
from __future__ import annotations

import math
from contextlib import contextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row

import config
from models import Account, PaymentStatus, PendingPayment, RequestStatus, SupportRequest


class StorageError(RuntimeError):
    """The backing store could not complete a read or write."""


def get_connection(timeout: float | None = None):
    """Open a connection whose connect and statement timeouts never exceed ``timeout``."""
    limit = config.storage_timeout_seconds()
    if timeout is not None:
        limit = min(limit, timeout)
    return psycopg.connect(
        config.database_url(),
        row_factory=dict_row,
        connect_timeout=max(int(math.ceil(limit)), 1),
        options=f"-c statement_timeout={max(int(limit * 1000), 1)}",
    )


@contextmanager
def _cursor(timeout: float | None = None) -> Iterator[psycopg.Cursor[dict[str, Any]]]:
    try:
        ensure_schema()
        with get_connection(timeout) as conn:
            with conn.cursor() as cur:
                yield cur
    except psycopg.Error as exc:
        raise StorageError(str(exc)) from exc


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    plan TEXT NOT NULL DEFAULT 'trial',
                    plan_start TIMESTAMPTZ NOT NULL,
                    usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
                    usage_window_start TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_payments (
                    reference TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                    requested_plan TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    submitted_at TIMESTAMPTZ NOT NULL,
                    verified_at TIMESTAMPTZ,
                    notes TEXT
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS pending_payments_user_idx
                ON pending_payments (user_id, submitted_at DESC);
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS pending_payments_status_idx
                ON pending_payments (status, submitted_at);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS support_requests (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                    topic TEXT NOT NULL,
                    message TEXT NOT NULL,
                    image_ref TEXT,
                    reply TEXT,
                    reply_source TEXT,
                    status TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    replied_at TIMESTAMPTZ
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS support_requests_user_idx
                ON support_requests (user_id, created_at DESC);
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS support_requests_status_idx
                ON support_requests (status, created_at);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS uploads (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                    file_ref TEXT NOT NULL,
                    content_type TEXT,
                    size_bytes INTEGER NOT NULL,
                    uploaded_at TIMESTAMPTZ NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                    key TEXT NOT NULL,
                    window_start TIMESTAMPTZ NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (key, window_start)
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS rate_limits_window_idx
                ON rate_limits (window_start);
                """
            )


def get_account(user_id: str, *, timeout: float | None = None) -> Account | None:
    with _cursor(timeout) as cur:
        cur.execute("SELECT * FROM accounts WHERE id = %s", (user_id,))
        row = cur.fetchone()
        return Account.from_row(row) if row else None


def insert_account(user_id: str, plan: str, now: datetime, *, timeout: float | None = None) -> bool:
    """Create a fresh account; returns False when the id already exists."""
    with _cursor(timeout) as cur:
        cur.execute(
            """
            INSERT INTO accounts (id, plan, plan_start, usage_count, usage_window_start)
            VALUES (%s, %s, %s, 0, %s)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            """,
            (user_id, plan, now, now),
        )
        return cur.fetchone() is not None


def reset_usage_window(
    user_id: str,
    *,
    expected_window_start: datetime,
    now: datetime,
    timeout: float | None = None,
) -> bool:
    with _cursor(timeout) as cur:
        cur.execute(
            """
            UPDATE accounts
            SET usage_count = 0, usage_window_start = %s
            WHERE id = %s AND usage_window_start = %s
            RETURNING id
            """,
            (now, user_id, expected_window_start),
        )
        return cur.fetchone() is not None


def consume_usage(
    user_id: str,
    *,
    plan: str,
    plan_start: datetime,
    window_start: datetime,
    limit: int | None,
    timeout: float | None = None,
) -> int | None:
    """Add one unit of usage if the account is still in the state the caller saw.

    ``limit`` of None means the plan is unbounded. Returns the new count, or
    None when the guard failed (quota reached, plan changed or window rolled).
    """
    with _cursor(timeout) as cur:
        cur.execute(
            """
            UPDATE accounts
            SET usage_count = usage_count + 1
            WHERE id = %(id)s
              AND plan = %(plan)s
              AND plan_start = %(plan_start)s
              AND usage_window_start = %(window_start)s
              AND (%(limit)s::integer IS NULL OR usage_count < %(limit)s::integer)
            RETURNING usage_count
            """,
            {
                "id": user_id,
                "plan": plan,
                "plan_start": plan_start,
                "window_start": window_start,
                "limit": limit,
            },
        )
        row = cur.fetchone()
        return int(row["usage_count"]) if row else None


def set_account_plan(user_id: str, plan: str, now: datetime) -> Account:
    """Move an account to ``plan`` starting now, creating it if needed."""
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO accounts (id, plan, plan_start, usage_count, usage_window_start)
            VALUES (%s, %s, %s, 0, %s)
            ON CONFLICT (id) DO UPDATE
            SET plan = EXCLUDED.plan,
                plan_start = EXCLUDED.plan_start,
                usage_count = 0,
                usage_window_start = EXCLUDED.usage_window_start
            RETURNING *
            """,
            (user_id, plan, now, now),
        )
        return Account.from_row(cur.fetchone())


def delete_account(user_id: str) -> bool:
    with _cursor() as cur:
        cur.execute("DELETE FROM accounts WHERE id = %s RETURNING id", (user_id,))
        return cur.fetchone() is not None


def insert_pending_payment(
    *,
    reference: str,
    user_id: str,
    requested_plan: str,
    now: datetime,
) -> PendingPayment | None:
    """Insert a pending payment; returns None when the reference is taken."""
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO pending_payments (reference, user_id, requested_plan, status, submitted_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (reference) DO NOTHING
            RETURNING *
            """,
            (reference, user_id, requested_plan, PaymentStatus.PENDING.value, now),
        )
        row = cur.fetchone()
        return PendingPayment.from_row(row) if row else None


def get_pending_payment(reference: str) -> PendingPayment | None:
    with _cursor() as cur:
        cur.execute("SELECT * FROM pending_payments WHERE reference = %s", (reference,))
        row = cur.fetchone()
        return PendingPayment.from_row(row) if row else None


def approve_pending_payment(
    reference: str,
    *,
    notes: str | None,
    now: datetime,
) -> tuple[PendingPayment | None, Account | None]:
    """Apply a pending payment to its account in a single transaction.

    Returns ``(None, None)`` for an unknown reference and ``(payment, None)``
    when the payment was already approved.
    """
    with _cursor() as cur:
        cur.execute(
            "SELECT * FROM pending_payments WHERE reference = %s FOR UPDATE",
            (reference,),
        )
        row = cur.fetchone()
        if not row:
            return None, None
        if row["status"] != PaymentStatus.PENDING.value:
            return PendingPayment.from_row(row), None
        cur.execute(
            """
            INSERT INTO accounts (id, plan, plan_start, usage_count, usage_window_start)
            VALUES (%s, %s, %s, 0, %s)
            ON CONFLICT (id) DO UPDATE
            SET plan = EXCLUDED.plan,
                plan_start = EXCLUDED.plan_start,
                usage_count = 0,
                usage_window_start = EXCLUDED.usage_window_start
            RETURNING *
            """,
            (row["user_id"], row["requested_plan"], now, now),
        )
        account = Account.from_row(cur.fetchone())
        cur.execute(
            """
            UPDATE pending_payments
            SET status = %s, verified_at = %s, notes = COALESCE(%s, notes)
            WHERE reference = %s
            RETURNING *
            """,
            (PaymentStatus.APPROVED.value, now, notes, reference),
        )
        payment = PendingPayment.from_row(cur.fetchone())
        return payment, account


def list_pending_payments(
    *,
    status: PaymentStatus | None = None,
    user_id: str | None = None,
    limit: int = 100,
) -> list[PendingPayment]:
    clauses: list[str] = []
    params: list[Any] = []
    if status is not None:
        clauses.append("status = %s")
        params.append(status.value)
    if user_id is not None:
        clauses.append("user_id = %s")
        params.append(user_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    with _cursor() as cur:
        cur.execute(
            f"SELECT * FROM pending_payments {where} ORDER BY submitted_at ASC LIMIT %s",
            params,
        )
        return [PendingPayment.from_row(row) for row in cur.fetchall()]


def insert_support_request(
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
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO support_requests (
                id,
                user_id,
                topic,
                message,
                image_ref,
                reply,
                reply_source,
                status,
                created_at,
                replied_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                request_id,
                user_id,
                topic,
                message,
                image_ref,
                reply,
                reply_source,
                status.value,
                now,
                now if reply is not None else None,
            ),
        )
        return SupportRequest.from_row(cur.fetchone())


def set_support_reply(
    request_id: str,
    *,
    reply: str,
    reply_source: str,
    now: datetime,
) -> SupportRequest | None:
    with _cursor() as cur:
        cur.execute(
            """
            UPDATE support_requests
            SET reply = %s, reply_source = %s, status = %s, replied_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (reply, reply_source, RequestStatus.ANSWERED.value, now, request_id),
        )
        row = cur.fetchone()
        return SupportRequest.from_row(row) if row else None


def fetch_support_requests(
    *,
    user_id: str | None = None,
    status: RequestStatus | None = None,
    limit: int = 50,
) -> list[SupportRequest]:
    clauses: list[str] = []
    params: list[Any] = []
    if user_id is not None:
        clauses.append("user_id = %s")
        params.append(user_id)
    if status is not None:
        clauses.append("status = %s")
        params.append(status.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    with _cursor() as cur:
        cur.execute(
            f"SELECT * FROM support_requests {where} ORDER BY created_at DESC LIMIT %s",
            params,
        )
        return [SupportRequest.from_row(row) for row in cur.fetchall()]


def insert_upload(
    *,
    upload_id: str,
    user_id: str,
    file_ref: str,
    content_type: str | None,
    size_bytes: int,
    now: datetime,
) -> None:
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO uploads (id, user_id, file_ref, content_type, size_bytes, uploaded_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (upload_id, user_id, file_ref, content_type, size_bytes, now),
        )


def increment_rate_limit(key: str, window_start: datetime) -> int:
    with _cursor() as cur:
        cur.execute(
            """
            INSERT INTO rate_limits (key, window_start, count)
            VALUES (%s, %s, 1)
            ON CONFLICT (key, window_start)
            DO UPDATE SET count = rate_limits.count + 1
            RETURNING count
            """,
            (key, window_start),
        )
        row = cur.fetchone()
        return int(row["count"]) if row else 1


def list_upload_refs(user_id: str) -> list[str]:
    with _cursor() as cur:
        cur.execute("SELECT file_ref FROM uploads WHERE user_id = %s", (user_id,))
        return [row["file_ref"] for row in cur.fetchall()]


def prune_rate_limits(before: datetime) -> int:
    with _cursor() as cur:
        cur.execute("DELETE FROM rate_limits WHERE window_start < %s", (before,))
        return cur.rowcount
