from __future__ import annotations

# Re-export webhook delivery services for centralized imports.

from hookline.services.webhooks.dispatcher import build_envelope, dispatch_event, send_test_delivery
from hookline.services.webhooks.executor import execute_delivery
from hookline.services.webhooks.history import get_delivery, list_deliveries
from hookline.services.webhooks.registry import (
    create_webhook,
    delete_webhook,
    get_webhook,
    list_webhooks,
    rotate_secret,
    update_webhook,
)
from hookline.services.webhooks.scheduler import (
    enqueue_due_retries,
    process_delivery_job,
    retry_delay_ms,
    retry_delivery,
)
from hookline.services.webhooks.signing import sign_payload, verify_signature

__all__ = [
    "build_envelope",
    "dispatch_event",
    "send_test_delivery",
    "execute_delivery",
    "get_delivery",
    "list_deliveries",
    "create_webhook",
    "delete_webhook",
    "get_webhook",
    "list_webhooks",
    "rotate_secret",
    "update_webhook",
    "enqueue_due_retries",
    "process_delivery_job",
    "retry_delay_ms",
    "retry_delivery",
    "sign_payload",
    "verify_signature",
]
