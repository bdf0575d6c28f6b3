from __future__ import annotations

import json
import logging
import os
from typing import Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("forexdesk.config")


def env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def bool_env(name: str, default: str | None = None) -> bool:
    raw = env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def int_env(name: str, default: int) -> int:
    return int(env(name, str(default)) or default)


def float_env(name: str, default: float) -> float:
    return float(env(name, str(default)) or default)


def environment() -> str:
    return (env("ENVIRONMENT", "development") or "development").strip().lower()


def strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return bool_env("STRICT_ENV_VALIDATION", "true")
    return environment() in {"production", "prod"}


def database_url() -> str:
    url = env("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def storage_timeout_seconds() -> float:
    return float_env("STORAGE_TIMEOUT_SECONDS", 2.0)


def admin_secret() -> str | None:
    return env("ADMIN_SECRET")


def admin_chat_id() -> str | None:
    return env("ADMIN_TELEGRAM_ID")


def bot_token() -> str | None:
    return env("BOT_TOKEN")


def entitlement_timeout_seconds() -> float:
    return float_env("ENTITLEMENT_TIMEOUT_SECONDS", 3.0)


def entitlement_max_attempts() -> int:
    return int_env("ENTITLEMENT_MAX_ATTEMPTS", 5)


def upload_dir() -> str:
    return env("UPLOAD_DIR", os.path.join(os.path.dirname(__file__), "uploads")) or "uploads"


def upload_max_bytes() -> int:
    return int_env("UPLOAD_MAX_BYTES", 8 * 1024 * 1024)


def plan_catalog_overrides() -> dict[str, Any]:
    raw = env("PLAN_CATALOG")
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("PLAN_CATALOG must be a JSON object.")
    return data


def parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin:
            continue
        origins.append(origin.rstrip("/"))
    return origins


def validate_env() -> None:
    """Collect every configuration problem and fail once with all of them."""
    errors: list[str] = []
    warnings: list[str] = []
    strict = strict_env()

    secret = admin_secret()
    if not secret:
        if strict:
            errors.append("ADMIN_SECRET is required.")
        else:
            warnings.append("ADMIN_SECRET is not set; admin endpoints disabled.")
    elif strict and len(secret) < 16:
        errors.append("ADMIN_SECRET must be at least 16 characters.")

    if not env("DATABASE_URL"):
        if strict:
            errors.append("DATABASE_URL is required.")
        else:
            warnings.append("DATABASE_URL is not set; storage calls will fail.")

    if not bot_token():
        warnings.append("BOT_TOKEN not set; Telegram notifications disabled.")
    if not env("OPENAI_API_KEY"):
        warnings.append("OPENAI_API_KEY not set; automatic replies will fail.")

    for name, default in (
        ("TRIAL_DURATION_HOURS", 24),
        ("TRIAL_WEEKLY_LIMIT", 5),
        ("STARTER_WEEKLY_LIMIT", 5),
        ("PRO_WEEKLY_LIMIT", 10),
        ("PLAN_DURATION_DAYS", 30),
        ("ENTITLEMENT_MAX_ATTEMPTS", 5),
        ("UPLOAD_MAX_BYTES", 8 * 1024 * 1024),
        ("RATE_LIMIT_USER_PER_MINUTE", 30),
        ("RATE_LIMIT_IP_PER_MINUTE", 120),
    ):
        try:
            value = int_env(name, default)
        except ValueError:
            errors.append(f"{name} must be an integer.")
            continue
        if value < 0:
            errors.append(f"{name} must not be negative.")

    timeouts: dict[str, float] = {}
    for name, default in (
        ("ENTITLEMENT_TIMEOUT_SECONDS", 3.0),
        ("STORAGE_TIMEOUT_SECONDS", 2.0),
    ):
        try:
            timeouts[name] = float_env(name, default)
        except ValueError:
            errors.append(f"{name} must be a number.")
            continue
        if timeouts[name] <= 0:
            errors.append(f"{name} must be positive.")
    if len(timeouts) == 2 and timeouts["STORAGE_TIMEOUT_SECONDS"] > timeouts["ENTITLEMENT_TIMEOUT_SECONDS"]:
        errors.append("STORAGE_TIMEOUT_SECONDS must not exceed ENTITLEMENT_TIMEOUT_SECONDS.")

    try:
        plan_catalog_overrides()
    except ValueError as exc:
        errors.append(f"PLAN_CATALOG is invalid: {exc}")

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)
