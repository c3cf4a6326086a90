"""Authenticated caller passed into every service operation."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def emails_match(a: str | None, b: str | None) -> bool:
    """Case-insensitive email comparison; empty never matches."""
    na, nb = normalize_email(a), normalize_email(b)
    return bool(na) and na == nb


def mask_email(email: str) -> str:
    """Mask the local part of an email, keeping the first character."""
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


@dataclass(frozen=True)
class Caller:
    """Resolved caller: local user id, verified email and admin flag."""

    user_id: UUID
    email: str
    is_admin: bool = False

    def is_email(self, email: str | None) -> bool:
        return emails_match(self.email, email)
