from src.notifications.webhooks import (
    NotificationSink,
    WebhookEventType,
    WebhookNotifier,
    build_event_data,
)

__all__ = [
    "NotificationSink",
    "WebhookEventType",
    "WebhookNotifier",
    "build_event_data",
]
