"""
Discord Webhook Alert Sink.

============================================================
PURPOSE
============================================================
Post transaction alerts to a Discord channel webhook.

PRINCIPLES:
- One message carries at most 10 embeds (Discord limit)
- Webhook URLs are validated before any request
- Non-2xx responses raise AlertDeliveryError

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp

from chain_adapters.exceptions import AlertDeliveryError
from chain_adapters.models import ActiveMonitor, CanonicalTransaction, Direction, TxStatus

from .dispatcher import AlertSink


logger = logging.getLogger(__name__)


WEBHOOK_PREFIXES = (
    "https://discord.com/api/webhooks/",
    "https://discordapp.com/api/webhooks/",
)


# ============================================================
# DISCORD EMBED FORMATTER
# ============================================================

class DiscordFormatter:
    """Builds minimal Discord embeds for canonical records."""

    COLOR_IN = 0x2ECC71
    COLOR_OUT = 0xE74C3C
    COLOR_PENDING = 0x3498DB
    COLOR_FAILED = 0x95A5A6

    DIRECTION_LABEL = {
        Direction.IN: "📥 Incoming",
        Direction.OUT: "📤 Outgoing",
        Direction.ANY: "↔️ Transfer",
    }

    @staticmethod
    def _short(address: str) -> str:
        if len(address) > 16:
            return f"{address[:8]}...{address[-8:]}"
        return address or "-"

    @classmethod
    def color_for(cls, tx: CanonicalTransaction) -> int:
        if tx.status == TxStatus.FAILED:
            return cls.COLOR_FAILED
        if tx.status == TxStatus.PENDING:
            return cls.COLOR_PENDING
        return cls.COLOR_IN if tx.direction == Direction.IN else cls.COLOR_OUT

    @classmethod
    def format_embed(cls, tx: CanonicalTransaction) -> dict[str, Any]:
        quote = f"${tx.amount_quote}" if tx.amount_quote else "-"
        lines = [
            f"**{tx.chain.value} {tx.token} transaction**",
            "",
            f"💰 **{tx.amount} {tx.token}** ({quote})",
            f"{cls.DIRECTION_LABEL[tx.direction]}",
            f"⚡ **Status:** {tx.status.value.capitalize()}",
            f"📦 **Block:** {tx.block or '-'}",
            f"👛 **Wallet:** {cls._short(tx.wallet_address)}",
            f"➡️ **From:** {cls._short(tx.from_address)}",
            f"⬅️ **To:** {cls._short(tx.to_address)}",
            f"🔗 **Hash:** `{tx.tx_hash}`",
        ]
        if tx.fee:
            lines.append(f"⛽ **Fee:** {tx.fee}")
        return {
            "description": "\n".join(lines),
            "color": cls.color_for(tx),
            "timestamp": tx.timestamp.isoformat(),
        }

    @classmethod
    def format_payload(
        cls,
        monitor: ActiveMonitor,
        records: list[CanonicalTransaction],
    ) -> dict[str, Any]:
        return {
            "username": f"{monitor.chain.value} Wallet Monitor",
            "embeds": [cls.format_embed(tx) for tx in records],
        }


# ============================================================
# DISCORD SINK
# ============================================================

class DiscordWebhookSink(AlertSink):
    """Posts alert batches to Discord webhooks via aiohttp."""

    max_items_per_message = 10

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 15.0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self._formatter = DiscordFormatter()

    def validate_target(self, target: str) -> bool:
        return isinstance(target, str) and target.strip().startswith(WEBHOOK_PREFIXES)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    async def send_batch(
        self,
        target: str,
        monitor: ActiveMonitor,
        records: list[CanonicalTransaction],
    ) -> None:
        if not self.validate_target(target):
            raise AlertDeliveryError("Invalid Discord webhook URL", target=target)
        if len(records) > self.max_items_per_message:
            raise AlertDeliveryError(
                f"Batch of {len(records)} exceeds {self.max_items_per_message} embeds",
                target=target,
            )

        payload = self._formatter.format_payload(monitor, records)
        session = await self._get_session()

        try:
            async with session.post(target.strip(), json=payload) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    raise AlertDeliveryError(
                        f"Discord webhook returned {response.status}: {body[:200]}",
                        target=target,
                        status_code=response.status,
                    )
        except aiohttp.ClientError as e:
            raise AlertDeliveryError(
                f"Discord webhook request failed: {e}",
                target=target,
                original_error=e,
            ) from e

        logger.debug(
            f"Discord alert sent for {monitor.wallet_address} ({len(records)} embeds) "
            f"at {datetime.now(timezone.utc).isoformat()}"
        )

    async def close(self) -> None:
        """Close the HTTP session if owned."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None
