"""
Chain Adapter Exceptions - Custom exception hierarchy.

Adapters signal failure through these types only. The engine maps
each type to a fixed policy (skip cycle, retry, reject, fall back).
"""

from datetime import datetime, timezone
from typing import Any, Optional


class ChainAdapterError(Exception):
    """Base exception for all chain activity errors."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        address: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.chain = chain
        self.address = address
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "chain": self.chain,
            "address": self.address,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.chain:
            parts.append(f"[chain={self.chain}]")
        if self.address:
            parts.append(f"[address={self.address}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class AdapterUnavailableError(ChainAdapterError):
    """Transient adapter failure. The cycle is skipped, state untouched."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        address: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, address, original_error, context)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class RateLimitedError(ChainAdapterError):
    """Provider rate limit hit. Retried with backoff, then the wallet is skipped."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        address: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, address, original_error, context)
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class InvalidAddressError(ChainAdapterError):
    """Address is malformed for its chain. Permanent."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        address: Optional[str] = None,
        reason: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, address, None, context)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class UnsupportedCapabilityError(ChainAdapterError):
    """Adapter does not implement an optional capability (push subscriptions)."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        capability: str = "subscribe",
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, chain, None, None, context)
        self.capability = capability

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["capability"] = self.capability
        return data


class PersistenceConflictError(ChainAdapterError):
    """A concurrent writer stored the same dedup key first. Treated as not new."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        address: Optional[str] = None,
        dedup_key: Optional[tuple] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, chain, address, original_error)
        self.dedup_key = dedup_key

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["dedup_key"] = list(self.dedup_key) if self.dedup_key else None
        return data


class StorageError(ChainAdapterError):
    """Persistence layer failure. The checkpoint is not advanced."""


class ChainNotConfiguredError(ChainAdapterError):
    """No adapter is registered for the requested chain."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        configured_chains: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, chain)
        self.configured_chains = configured_chains or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["configured_chains"] = self.configured_chains
        return data


class AlertDeliveryError(ChainAdapterError):
    """An alert sink failed to deliver a batch. Logged, never retried."""

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, None, None, original_error)
        self.target = target
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"target": self.target, "status_code": self.status_code})
        return data
