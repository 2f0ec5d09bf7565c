"""
Monitor Registry - The set of actively monitored (chain, wallet) pairs.

An ActiveMonitor's presence is the only thing that allows
notifications for a wallet. The registry is process-local and
never persisted. Registrations are counted so several requesters
can share one wallet; the monitor disappears when the last one
stops. The most recent registration's alert target wins.

Every ActiveMonitor handed out is a copy; only the registry
mutates its own entries.
"""

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Optional

from chain_adapters.models import ActiveMonitor, Chain


logger = logging.getLogger(__name__)


class MonitorRegistry:
    """Owner of all ActiveMonitor entries."""

    def __init__(self) -> None:
        self._monitors: dict[tuple[Chain, str], ActiveMonitor] = {}

    def add(
        self,
        wallet_address: str,
        chain: Chain,
        alert_target: Optional[str] = None,
    ) -> ActiveMonitor:
        """Register a wallet, or bump the registration count if already active."""
        key = (chain, wallet_address)
        monitor = self._monitors.get(key)
        if monitor is None:
            monitor = ActiveMonitor(
                wallet_address=wallet_address,
                chain=chain,
                alert_target=alert_target,
                registrations=1,
                registered_at=datetime.now(timezone.utc),
            )
            self._monitors[key] = monitor
            logger.info(f"[{chain.value}] Monitoring started for {wallet_address}")
        else:
            monitor.registrations += 1
            if alert_target is not None:
                monitor.alert_target = alert_target
            logger.debug(
                f"[{chain.value}] {wallet_address} registrations={monitor.registrations}"
            )
        return dataclasses.replace(monitor)

    def remove(self, wallet_address: str, chain: Chain) -> Optional[ActiveMonitor]:
        """
        Drop one registration.

        Returns the monitor if it was fully removed, None otherwise
        (unknown wallet or other registrations remain).
        """
        key = (chain, wallet_address)
        monitor = self._monitors.get(key)
        if monitor is None:
            return None

        monitor.registrations -= 1
        if monitor.registrations > 0:
            return None

        del self._monitors[key]
        logger.info(f"[{chain.value}] Monitoring stopped for {wallet_address}")
        return monitor

    def get(self, wallet_address: str, chain: Chain) -> Optional[ActiveMonitor]:
        monitor = self._monitors.get((chain, wallet_address))
        return dataclasses.replace(monitor) if monitor is not None else None

    def is_active(self, wallet_address: str, chain: Chain) -> bool:
        return (chain, wallet_address) in self._monitors

    def list(self, chain: Optional[Chain] = None) -> list[ActiveMonitor]:
        """Snapshot of active monitors, oldest registration first."""
        monitors = [
            dataclasses.replace(m) for m in self._monitors.values()
            if chain is None or m.chain == chain
        ]
        return sorted(monitors, key=lambda m: m.registered_at)

    def __len__(self) -> int:
        return len(self._monitors)
