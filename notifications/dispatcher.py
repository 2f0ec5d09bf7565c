"""
Notification Dispatcher.

============================================================
PURPOSE
============================================================
Forward newly inserted records to the alert sink of the wallet's
ActiveMonitor.

PRINCIPLES:
- Input is only the newly inserted subset from dedup
- No ActiveMonitor or no alert target: nothing is sent
- Records are chunked to the sink's per-message limit, in order
- Best-effort: a failed batch is logged and dropped, never
  retried; later batches are still attempted

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from chain_adapters.exceptions import AlertDeliveryError
from chain_adapters.models import ActiveMonitor, CanonicalTransaction, Chain

if TYPE_CHECKING:
    from activity_engine.registry import MonitorRegistry


logger = logging.getLogger(__name__)


# ============================================================
# ALERT SINK CONTRACT
# ============================================================

class AlertSink(ABC):
    """Destination for transaction alerts (webhook, chat, queue)."""

    max_items_per_message: int = 10

    @abstractmethod
    async def send_batch(
        self,
        target: str,
        monitor: ActiveMonitor,
        records: list[CanonicalTransaction],
    ) -> None:
        """
        Deliver one message containing `records`.

        Raises:
            AlertDeliveryError: If the destination rejected the message
        """
        pass

    def validate_target(self, target: str) -> bool:
        """Whether target is a deliverable destination for this sink."""
        return bool(target)

    async def close(self) -> None:
        return None


def chunk_records(
    records: list[CanonicalTransaction],
    size: int,
) -> list[list[CanonicalTransaction]]:
    """Split records into order-preserving chunks of at most `size`."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [records[i:i + size] for i in range(0, len(records), size)]


@dataclass
class DispatchResult:
    """Outcome of one dispatch call."""
    gated: bool = False
    batches_sent: int = 0
    batches_failed: int = 0
    records_sent: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "gated": self.gated,
            "batches_sent": self.batches_sent,
            "batches_failed": self.batches_failed,
            "records_sent": self.records_sent,
        }


# ============================================================
# DISPATCHER
# ============================================================

class NotificationDispatcher:
    """Gates and delivers alerts for newly persisted records."""

    def __init__(
        self,
        registry: "MonitorRegistry",
        sink: Optional[AlertSink] = None,
    ) -> None:
        self._registry = registry
        self._sink = sink
        self._stats = {
            "dispatches": 0,
            "gated": 0,
            "batches_sent": 0,
            "batches_failed": 0,
            "records_sent": 0,
        }

    @property
    def sink(self) -> Optional[AlertSink]:
        return self._sink

    def validate_target(self, target: str) -> bool:
        if self._sink is None:
            return True
        return self._sink.validate_target(target)

    async def dispatch(
        self,
        wallet_address: str,
        chain: Chain,
        records: list[CanonicalTransaction],
    ) -> DispatchResult:
        """Deliver records if the wallet is actively monitored with a target."""
        result = DispatchResult()
        if not records:
            return result

        self._stats["dispatches"] += 1

        monitor = self._registry.get(wallet_address, chain)
        if monitor is None or not monitor.alert_target or self._sink is None:
            result.gated = True
            self._stats["gated"] += 1
            logger.debug(
                f"[{chain.value}] {len(records)} new records for {wallet_address} "
                f"not dispatched (no active alert target)"
            )
            return result

        for batch in chunk_records(records, self._sink.max_items_per_message):
            try:
                await self._sink.send_batch(monitor.alert_target, monitor, batch)
                result.batches_sent += 1
                result.records_sent += len(batch)
            except AlertDeliveryError as e:
                result.batches_failed += 1
                logger.warning(
                    f"[{chain.value}] Alert batch of {len(batch)} for {wallet_address} "
                    f"dropped: {e}"
                )
            except Exception as e:
                result.batches_failed += 1
                logger.error(
                    f"[{chain.value}] Unexpected error delivering alerts for "
                    f"{wallet_address}: {e}",
                    exc_info=True,
                )

        self._stats["batches_sent"] += result.batches_sent
        self._stats["batches_failed"] += result.batches_failed
        self._stats["records_sent"] += result.records_sent

        if result.batches_sent:
            logger.info(
                f"[{chain.value}] Sent {result.records_sent} alerts for {wallet_address} "
                f"in {result.batches_sent} message(s)"
            )
        return result

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def close(self) -> None:
        if self._sink is not None:
            await self._sink.close()
