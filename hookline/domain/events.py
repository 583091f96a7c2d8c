from __future__ import annotations

from typing import Any, Literal, TypedDict


WEBHOOK_EVENT_TYPES: tuple[str, ...] = (
    "deployment.started",
    "deployment.succeeded",
    "deployment.failed",
    "deployment.rolled_back",
    "agent.task.started",
    "agent.task.completed",
    "agent.task.failed",
    "agent.error",
    "story.created",
    "story.updated",
    "story.status_changed",
    "sprint.started",
    "sprint.completed",
    "cost.alert.threshold_reached",
    "cost.alert.budget_exceeded",
)

# Accepted by connectivity checks only; destinations cannot subscribe to it.
TEST_EVENT_TYPE = "test.ping"

DeliveryStatus = Literal["pending", "success", "failed", "retrying"]

DELIVERY_STATUSES: tuple[str, ...] = ("pending", "success", "failed", "retrying")


def is_valid_event_type(event_type: str) -> bool:
    return event_type in WEBHOOK_EVENT_TYPES


class WebhookEnvelope(TypedDict):
    event: str
    timestamp: str
    data: dict[str, Any]


class TruncatedEnvelope(TypedDict):
    event: str
    timestamp: str
    _truncated: bool
    _original_size: int
