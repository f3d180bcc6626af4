"""Runtime: lifecycle events and the completion callback surface."""

from atelier.runtime.event_bus import EventBus, EventType, PipelineEvent
from atelier.runtime.reconciler import CallbackReconciler, CallbackResponse, RunResumer
from atelier.runtime.signing import canonical_string, sign_payload, verify_signature
from atelier.runtime.webhook_server import WebhookServer

__all__ = [
    "CallbackReconciler",
    "CallbackResponse",
    "EventBus",
    "EventType",
    "PipelineEvent",
    "RunResumer",
    "WebhookServer",
    "canonical_string",
    "sign_payload",
    "verify_signature",
]
