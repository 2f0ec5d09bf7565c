"""
Notifications Package.

Best-effort alert delivery for newly persisted transactions.
"""

from .discord import DiscordFormatter, DiscordWebhookSink
from .dispatcher import AlertSink, DispatchResult, NotificationDispatcher, chunk_records


__all__ = [
    "AlertSink",
    "DispatchResult",
    "NotificationDispatcher",
    "chunk_records",
    "DiscordFormatter",
    "DiscordWebhookSink",
]
