"""
Base Chain Adapter - Abstract contract for per-chain activity providers.

============================================================
PURPOSE
============================================================
Every blockchain integration (explorer API, RPC node, websocket
feed) implements this contract and returns canonical records.
The engine never sees raw provider payloads.

============================================================
CONTRACT
============================================================
- fetch_balance(address) -> BalanceSnapshot
- fetch_transactions_since(address, checkpoint) -> FetchResult
  Returns only records with cursor strictly greater than the
  checkpoint. A None checkpoint means full backfill.
- subscribe / unsubscribe (optional, push-capable chains only)

Failures are signalled only through chain_adapters.exceptions.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiohttp

from chain_adapters.exceptions import (
    AdapterUnavailableError,
    InvalidAddressError,
    RateLimitedError,
    UnsupportedCapabilityError,
)
from chain_adapters.models import (
    ActivityCallback,
    BalanceSnapshot,
    Chain,
    FetchResult,
    SubscriptionHandle,
)


logger = logging.getLogger(__name__)


# Minimum address lengths accepted at registration
MIN_ADDRESS_LENGTH: dict[Chain, int] = {
    Chain.ETH: 40,
    Chain.BNB: 40,
    Chain.TRON: 34,
    Chain.BTC: 25,
    Chain.LTC: 25,
    Chain.SOL: 32,
}


def normalize_address(chain: Chain, address: str) -> str:
    """
    Normalize and validate an address for its chain.

    EVM addresses are lowercased so that the same wallet always maps
    to the same dedup key. Other chains are case-sensitive.

    Raises:
        InvalidAddressError: If the address fails the chain's rules
    """
    if not isinstance(address, str) or not address.strip():
        raise InvalidAddressError(
            "Address is empty", chain=chain.value, address=str(address), reason="empty"
        )

    candidate = address.strip()

    if chain.is_evm:
        if not candidate.lower().startswith("0x"):
            raise InvalidAddressError(
                "EVM address must start with 0x",
                chain=chain.value,
                address=candidate,
                reason="prefix",
            )
        candidate = candidate.lower()

    if len(candidate) < MIN_ADDRESS_LENGTH[chain]:
        raise InvalidAddressError(
            f"Address too short for {chain.value}",
            chain=chain.value,
            address=candidate,
            reason="length",
        )

    return candidate


class BaseChainAdapter(ABC):
    """
    Abstract base class for all chain adapters.

    Subclasses implement:
    1. chain - which network this adapter serves
    2. fetch_balance() - native balance snapshot
    3. fetch_transactions_since() - canonical records after a checkpoint

    Push-capable subclasses additionally override supports_push,
    subscribe() and unsubscribe().

    HTTP-backed subclasses get a shared aiohttp session and
    _make_request(), which maps 429 to RateLimitedError and any other
    failure to AdapterUnavailableError.
    """

    DEFAULT_TIMEOUT = 30.0
    DEFAULT_RETRY_AFTER = 5.0

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

        self._stats = {
            "balance_fetches": 0,
            "transaction_fetches": 0,
            "records_returned": 0,
            "errors": 0,
        }

    @property
    @abstractmethod
    def chain(self) -> Chain:
        """Chain served by this adapter."""
        pass

    @property
    def name(self) -> str:
        return f"{self.chain.value.lower()}_adapter"

    @property
    def supports_push(self) -> bool:
        """Whether subscribe()/unsubscribe() are implemented."""
        return False

    @abstractmethod
    async def fetch_balance(self, address: str) -> BalanceSnapshot:
        """
        Fetch the native balance of an address.

        Raises:
            AdapterUnavailableError: Provider unreachable or erroring
            RateLimitedError: Provider rate limit hit
        """
        pass

    @abstractmethod
    async def fetch_transactions_since(
        self,
        address: str,
        checkpoint: Optional[int],
    ) -> FetchResult:
        """
        Fetch canonical records with cursor strictly after checkpoint.

        Args:
            address: Normalized wallet address
            checkpoint: Last committed cursor, or None for full backfill

        Returns:
            FetchResult with records and an optional new checkpoint

        Raises:
            AdapterUnavailableError: Provider unreachable or erroring
            RateLimitedError: Provider rate limit hit
        """
        pass

    def validate_address(self, address: str) -> str:
        """Return the normalized address or raise InvalidAddressError."""
        return normalize_address(self.chain, address)

    async def subscribe(
        self,
        address: str,
        on_activity: ActivityCallback,
    ) -> SubscriptionHandle:
        """
        Open a push subscription for account activity.

        on_activity(address) is awaited for every activity event.
        """
        raise UnsupportedCapabilityError(
            f"{self.name} does not support push subscriptions",
            chain=self.chain.value,
            capability="subscribe",
        )

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Close a push subscription opened by subscribe()."""
        raise UnsupportedCapabilityError(
            f"{self.name} does not support push subscriptions",
            chain=self.chain.value,
            capability="unsubscribe",
        )

    # ─────────────────────────────────────────────────────────────
    # HTTP helpers
    # ─────────────────────────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """Make an HTTP request and map failures onto adapter exceptions."""
        session = await self._get_session()

        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            ) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitedError(
                        message="Rate limit exceeded",
                        chain=self.chain.value,
                        retry_after_seconds=(
                            float(retry_after) if retry_after else self.DEFAULT_RETRY_AFTER
                        ),
                    )

                if response.status >= 400:
                    body = await response.text()
                    raise AdapterUnavailableError(
                        message=f"HTTP {response.status}",
                        chain=self.chain.value,
                        status_code=response.status,
                        context={"url": url, "body": body[:500]},
                    )

                return await response.json(content_type=None)

        except aiohttp.ClientError as e:
            self._stats["errors"] += 1
            raise AdapterUnavailableError(
                message=f"Connection error: {e}",
                chain=self.chain.value,
                original_error=e,
                context={"url": url},
            ) from e

    def get_stats(self) -> dict[str, Any]:
        return {"adapter": self.name, **self._stats}

    async def close(self) -> None:
        """Close resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "BaseChainAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(chain={self.chain.value})>"
