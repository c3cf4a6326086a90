"""External collaborator adapters."""

from settlement_engine.integrations.base import (
    WEBHOOK_EVENT_TYPES,
    DeliveryResult,
    DispatchReceipt,
    EmailSender,
    Identity,
    IdentityProvider,
    NotificationDispatcher,
    PayoutResult,
    PayoutRail,
)
from settlement_engine.integrations.stubs import (
    LoggingEmailSender,
    StaticTokenIdentityProvider,
    StubPayoutRail,
)
from settlement_engine.integrations.webhooks import (
    WebhookDispatcher,
    compute_webhook_signature,
    generate_webhook_secret,
    verify_webhook_signature,
)

__all__ = [
    "WEBHOOK_EVENT_TYPES",
    "DeliveryResult",
    "DispatchReceipt",
    "EmailSender",
    "Identity",
    "IdentityProvider",
    "LoggingEmailSender",
    "NotificationDispatcher",
    "PayoutRail",
    "PayoutResult",
    "StaticTokenIdentityProvider",
    "StubPayoutRail",
    "WebhookDispatcher",
    "compute_webhook_signature",
    "generate_webhook_secret",
    "verify_webhook_signature",
]
