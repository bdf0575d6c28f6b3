from __future__ import annotations

import hmac


class AdminNotConfigured(RuntimeError):
    pass


def verify_admin_secret(presented: str | None, expected: str | None) -> bool:
    """Compare the caller's admin credential with the configured one in constant time."""
    if not expected:
        raise AdminNotConfigured("ADMIN_SECRET is not set.")
    if not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
