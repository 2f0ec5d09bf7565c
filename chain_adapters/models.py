"""
Chain Activity Models - Canonical, chain-agnostic data structures.

============================================================
PURPOSE
============================================================
Every chain adapter normalizes its raw explorer / RPC payloads
into these types. Everything downstream of the adapter boundary
(dedup, checkpoints, notifications, persistence) operates on
these types only.

============================================================
INVARIANTS
============================================================
- (tx_hash, wallet_address, token) identifies a stored record
- amounts are exact decimal strings, never floats
- cursor is the chain-specific ordering value compared
  against the stored checkpoint

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple, Optional


class Chain(str, Enum):
    """Supported blockchain networks."""
    ETH = "ETH"
    BNB = "BNB"
    TRON = "TRON"
    BTC = "BTC"
    LTC = "LTC"
    SOL = "SOL"

    @classmethod
    def parse(cls, value: "str | Chain") -> "Chain":
        """Parse a chain from its name, case-insensitively."""
        if isinstance(value, Chain):
            return value
        normalized = str(value).strip().upper()
        aliases = {"TRX": "TRON", "BSC": "BNB", "SOLANA": "SOL", "ETHEREUM": "ETH"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown chain: {value!r}") from None

    @property
    def native_symbol(self) -> str:
        return NATIVE_SYMBOLS[self]

    @property
    def is_evm(self) -> bool:
        return self in (Chain.ETH, Chain.BNB)


NATIVE_SYMBOLS: dict[Chain, str] = {
    Chain.ETH: "ETH",
    Chain.BNB: "BNB",
    Chain.TRON: "TRX",
    Chain.BTC: "BTC",
    Chain.LTC: "LTC",
    Chain.SOL: "SOL",
}


class Direction(str, Enum):
    """Direction of value movement relative to the monitored wallet."""
    IN = "IN"
    OUT = "OUT"
    ANY = "ANY"


class TxCategory(str, Enum):
    """Asset category of a transaction record."""
    NATIVE = "native"
    TOKEN = "token"


class TxStatus(str, Enum):
    """Settlement status reported by the chain."""
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class DedupKey(NamedTuple):
    """Identity of a stored transaction record."""
    tx_hash: str
    wallet_address: str
    token: str


def _validate_amount(value: Optional[str], field_name: str, required: bool) -> None:
    if value is None or value == "":
        if required:
            raise ValueError(f"{field_name} is required")
        return
    if isinstance(value, float):
        raise ValueError(f"{field_name} must be a decimal string, not float")
    try:
        Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field_name} is not a valid decimal: {value!r}") from None


@dataclass(frozen=True)
class CanonicalTransaction:
    """
    A single chain-agnostic transaction record.

    One on-chain transaction may produce several records for the
    same wallet (e.g. a native transfer plus token transfers), each
    distinguished by `token`.
    """
    chain: Chain
    wallet_address: str
    tx_hash: str
    block: str
    timestamp: datetime
    amount: str
    token: str = ""
    category: TxCategory = TxCategory.NATIVE
    method: str = "transfer"
    from_address: str = ""
    to_address: str = ""
    direction: Direction = Direction.ANY
    amount_quote: Optional[str] = None
    fee: Optional[str] = None
    status: TxStatus = TxStatus.CONFIRMED
    cursor: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.tx_hash:
            raise ValueError("tx_hash is required")
        if not self.wallet_address:
            raise ValueError("wallet_address is required")
        _validate_amount(self.amount, "amount", required=True)
        _validate_amount(self.amount_quote, "amount_quote", required=False)
        _validate_amount(self.fee, "fee", required=False)

        # Frozen dataclass: normalize through object.__setattr__
        if not self.token:
            object.__setattr__(self, "token", self.chain.native_symbol)
        if self.timestamp.tzinfo is None:
            object.__setattr__(
                self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc)
            )
        if self.cursor is None:
            object.__setattr__(
                self, "cursor", int(self.timestamp.timestamp() * 1000)
            )

    @property
    def dedup_key(self) -> DedupKey:
        return DedupKey(self.tx_hash, self.wallet_address, self.token)

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(self.amount)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain.value,
            "wallet_address": self.wallet_address,
            "tx_hash": self.tx_hash,
            "token": self.token,
            "category": self.category.value,
            "method": self.method,
            "block": self.block,
            "timestamp": self.timestamp.isoformat(),
            "from": self.from_address,
            "to": self.to_address,
            "direction": self.direction.value,
            "amount": self.amount,
            "amount_quote": self.amount_quote,
            "fee": self.fee,
            "status": self.status.value,
            "cursor": self.cursor,
        }


@dataclass(frozen=True)
class BalanceSnapshot:
    """Native balance of a wallet at fetch time."""
    balance: str
    value_in_quote: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"balance": self.balance, "value_in_quote": self.value_in_quote}


@dataclass
class FetchResult:
    """Records returned by an adapter plus its suggested next checkpoint."""
    records: list[CanonicalTransaction] = field(default_factory=list)
    new_checkpoint: Optional[int] = None

    @property
    def max_cursor(self) -> Optional[int]:
        if not self.records:
            return None
        return max(r.cursor for r in self.records)


@dataclass
class WalletChainState:
    """
    Durable per-(wallet, chain) state.

    checkpoint only ever moves forward.
    """
    wallet_address: str
    chain: Chain
    balance: str = "0"
    value_in_quote: Optional[str] = None
    last_fetched_at: Optional[datetime] = None
    checkpoint: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "chain": self.chain.value,
            "balance": self.balance,
            "value_in_quote": self.value_in_quote,
            "last_fetched_at": (
                self.last_fetched_at.isoformat() if self.last_fetched_at else None
            ),
            "checkpoint": self.checkpoint,
        }


@dataclass
class ActiveMonitor:
    """
    Process-local registration marking a wallet as actively monitored.

    Owned by the MonitorRegistry. Never persisted; its presence is the
    sole gate for notifications.
    """
    wallet_address: str
    chain: Chain
    alert_target: Optional[str] = None
    registrations: int = 1
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple[Chain, str]:
        return (self.chain, self.wallet_address)

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "chain": self.chain.value,
            "alert_target": self.alert_target,
            "registrations": self.registrations,
            "registered_at": self.registered_at.isoformat(),
        }


ActivityCallback = Callable[[str], Awaitable[None]]


@dataclass
class SubscriptionHandle:
    """Opaque handle returned by a push-capable adapter."""
    chain: Chain
    address: str
    subscription_id: Any = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
