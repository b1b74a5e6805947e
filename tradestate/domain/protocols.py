"""
Domain protocols (interfaces) for dependency inversion.

The core never talks to a transport directly. The snapshot endpoint and
the mutation endpoints are collaborators that implement these protocols;
tests substitute AsyncMock fakes.
"""
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol, runtime_checkable

from tradestate.domain.models import TradeMode


@dataclass
class Snapshot:
    """
    Full point-in-time fetch.

    Entries are raw camelCase payloads as returned by the server. Positions
    include both open and closed/history entries.
    """
    positions: List[Mapping[str, Any]] = field(default_factory=list)
    subscriptions: List[Mapping[str, Any]] = field(default_factory=list)


@dataclass
class MutationResult:
    """Response envelope of every mutation endpoint: {success, data?, error?}."""
    success: bool
    data: Optional[Mapping[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MutationResult":
        data = raw.get("data")
        return cls(
            success=bool(raw.get("success")),
            data=data if isinstance(data, Mapping) else None,
            error=raw.get("error") or raw.get("message"),
        )


@runtime_checkable
class SnapshotSource(Protocol):
    """Fetches the full snapshot. Raises on transport failure."""

    async def fetch_snapshot(self) -> Snapshot: ...


@runtime_checkable
class MutationGateway(Protocol):
    """
    Remote mutation calls.

    Implementations may raise on transport failure or return
    MutationResult(success=False); the controller treats both the same.
    """

    async def modify_position(
        self,
        position_id: str,
        stop_loss: Optional[Any] = None,
        take_profit: Optional[Any] = None,
    ) -> MutationResult: ...

    async def close_position(self, position_id: str) -> MutationResult: ...

    async def update_strategy(
        self,
        subscription_id: str,
        is_active: Optional[bool] = None,
        is_paused: Optional[bool] = None,
    ) -> MutationResult: ...

    async def set_trade_mode(self, subscription_id: str, mode: TradeMode) -> MutationResult: ...


def snapshot_from_dict(raw: Mapping[str, Any]) -> Snapshot:
    """Build a Snapshot from {"positions": [...], "subscriptions": [...]}."""
    positions = raw.get("positions") or []
    subscriptions = raw.get("subscriptions") or []
    return Snapshot(positions=list(positions), subscriptions=list(subscriptions))
