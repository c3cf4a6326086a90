"""Best-effort side effects: emails, webhooks and post-commit audit.

Failures here are logged and swallowed. They never propagate into the
operation that triggered them.
"""

from __future__ import annotations

import asyncio
import html
import logging
from collections.abc import Awaitable
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.config import get_settings
from settlement_engine.integrations import EmailSender
from settlement_engine.services.audit_service import AuditLogger

logger = logging.getLogger(__name__)


async def run_best_effort(
    label: str,
    awaitable: Awaitable[Any],
    timeout: float | None = None,
) -> bool:
    """Await a side effect within a time bound. Returns False on failure."""
    if timeout is None:
        timeout = get_settings().external_call_timeout_seconds
    try:
        await asyncio.wait_for(awaitable, timeout)
    except Exception:
        logger.exception("Best-effort %s failed", label)
        return False
    return True


async def audit_after_commit(
    session: AsyncSession,
    audit: AuditLogger,
    invoice_id: UUID,
    event_type: str,
    actor_id: UUID | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Write and commit an audit event after the main transaction.

    The insert runs in a savepoint so a failure leaves other loaded state
    intact.
    """
    try:
        async with session.begin_nested():
            await audit.log_event(invoice_id, event_type, actor_id=actor_id, metadata=metadata)
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Audit %s for invoice %s not recorded", event_type, invoice_id)
        if session.in_transaction():
            await session.rollback()
        return False
    return True


async def send_email(sender: EmailSender | None, to: str | None, subject: str, body: str) -> bool:
    if sender is None or not to:
        return False
    return await run_best_effort(f"email to {to}", sender.send(to, subject, body))


def _html(*paragraphs: str) -> str:
    return "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs if p)


def _invoice_link(invoice_number: str) -> str:
    return f"View invoice: {get_settings().app_url.rstrip('/')}/pay/{invoice_number}"


def escrow_released_email(invoice_number: str, client_email: str, notes: str | None) -> tuple[str, str]:
    return (
        f"Escrow released for invoice {invoice_number}",
        _html(
            f"{client_email} approved your work and released escrow for invoice {invoice_number}.",
            f"Notes: {notes}" if notes else "",
            _invoice_link(invoice_number),
        ),
    )


def escrow_disputed_email(
    invoice_number: str, client_email: str, reason: str, requested_action: str
) -> tuple[str, str]:
    return (
        f"Escrow disputed for invoice {invoice_number}",
        _html(
            f"{client_email} disputed the escrow for invoice {invoice_number}.",
            f"Requested action: {requested_action}",
            f"Reason: {reason}",
            _invoice_link(invoice_number),
        ),
    )


def dispute_opened_email(invoice_number: str, initiated_by: str, reason: str) -> tuple[str, str]:
    return (
        f"Dispute opened for invoice {invoice_number}",
        _html(
            f"The {initiated_by} opened a dispute on invoice {invoice_number}.",
            f"Reason: {reason}",
            _invoice_link(invoice_number),
        ),
    )


def dispute_message_email(invoice_number: str, sender_type: str, message: str) -> tuple[str, str]:
    return (
        f"New message on dispute for invoice {invoice_number}",
        _html(f"The {sender_type} wrote:", message, _invoice_link(invoice_number)),
    )


def dispute_resolved_email(invoice_number: str, action: str, resolution: str) -> tuple[str, str]:
    return (
        f"Dispute resolved for invoice {invoice_number}",
        _html(
            f"The dispute on invoice {invoice_number} was resolved ({action.replace('_', ' ')}).",
            resolution,
            _invoice_link(invoice_number),
        ),
    )
