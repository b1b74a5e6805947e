"""
Domain models for the reconciliation core.

Entities held by the state store, plus the bookkeeping records that
describe who last wrote a field and which optimistic writes are in flight.
All timestamps use UTC timezone-aware datetimes. Money and price fields
are Decimal.
"""
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    """Position status. Open/closed membership is derived from this."""
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    """Why a position closed."""
    CLOSED = "closed"
    SL_HIT = "sl_hit"
    TP_HIT = "tp_hit"


class TradeMode(str, Enum):
    """Subscription execution mode."""
    PAPER = "paper"
    LIVE = "live"


class EntityKind(str, Enum):
    """Entity kinds carried by the store."""
    POSITION = "position"
    STRATEGY = "strategy"


class WriteSource(str, Enum):
    """Channel a store write came from."""
    REST = "rest"
    REALTIME = "realtime"
    OPTIMISTIC = "optimistic"


class MutationState(str, Enum):
    """
    Optimistic mutation lifecycle.

        PENDING → COMMITTED   (remote success)
        PENDING → ROLLED_BACK (remote failure, store reverted)
        PENDING → UNRESOLVED  (bulk member failed, optimistic value kept
                               until the next reconciliation pass)
    """
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    UNRESOLVED = "unresolved"


# ============ ENTITY KEYS ============

def position_key(position_id: Any) -> str:
    """Store key for a position id."""
    return f"{EntityKind.POSITION.value}:{position_id}"


def strategy_key(subscription_id: Any) -> str:
    """Store key for a strategy subscription id."""
    return f"{EntityKind.STRATEGY.value}:{subscription_id}"


def entity_key(kind: EntityKind, raw_id: Any) -> str:
    return f"{kind.value}:{raw_id}"


def parse_key(key: str) -> Tuple[EntityKind, str]:
    """Split a store key into (kind, raw id). Raises ValueError on bad keys."""
    kind, sep, raw_id = key.partition(":")
    if not sep or not raw_id:
        raise ValueError(f"Invalid entity key: {key!r}")
    return EntityKind(kind), raw_id


# ============ ENTITIES ============

@dataclass
class Position:
    """
    Trading position as seen by the client.

    current_price and profit are only meaningful while OPEN. Once CLOSED,
    closed_at is set and the store refuses further writes.
    """
    id: str
    symbol: str
    side: Side
    volume: Decimal
    entry_price: Decimal
    current_price: Decimal
    profit: Decimal
    status: PositionStatus
    opened_at: datetime
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    strategy_id: Optional[str] = None
    closed_at: Optional[datetime] = None

    # Carried from the wire payloads for display
    market: Optional[str] = None
    strategy_name: Optional[str] = None
    profit_percent: Optional[Decimal] = None
    close_price: Optional[Decimal] = None
    realized_profit: Optional[Decimal] = None
    close_reason: Optional[CloseReason] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED


@dataclass
class StrategySubscription:
    """A user's subscription to a strategy."""
    id: str
    strategy_id: str
    is_active: bool
    is_paused: bool
    trade_mode: TradeMode
    lots: Decimal
    name: Optional[str] = None


ENTITY_TYPES = {
    EntityKind.POSITION: Position,
    EntityKind.STRATEGY: StrategySubscription,
}


def entity_fields(kind: EntityKind) -> FrozenSet[str]:
    """Writable field names for an entity kind (id excluded)."""
    return frozenset(f.name for f in fields(ENTITY_TYPES[kind]) if f.name != "id")


def required_fields(kind: EntityKind) -> FrozenSet[str]:
    """Fields that must be present to create an entity of this kind."""
    return frozenset(
        f.name for f in fields(ENTITY_TYPES[kind])
        if f.name != "id" and f.default is MISSING and f.default_factory is MISSING
    )


# ============ BOOKKEEPING ============

@dataclass(frozen=True)
class ShadowWrite:
    """A REST write refused only because the field was pending."""
    value: Any
    source: WriteSource
    sequence: int


@dataclass(frozen=True)
class FieldTimestamp:
    """
    Who last set a field, and when in logical-clock terms.

    sequence is a logical clock value, never wall-clock: devices and
    servers are not assumed to be clock-synchronized. pending stays set
    until the mutation controller settles the field, even when a newer
    REALTIME write has replaced the optimistic value in the meantime.
    """
    source: WriteSource
    sequence: int
    pending: bool = False
    shadow: Optional[ShadowWrite] = None

    @property
    def rank(self) -> int:
        """Precedence rank. A settled optimistic write ranks with REST."""
        if self.source == WriteSource.OPTIMISTIC:
            return 3 if self.pending else 1
        return SOURCE_RANK[self.source]


SOURCE_RANK: Dict[WriteSource, int] = {
    WriteSource.REST: 1,
    WriteSource.REALTIME: 2,
    WriteSource.OPTIMISTIC: 3,
}


@dataclass
class PendingMutation:
    """
    One optimistic write to one (entity, field) key.

    At most one PENDING record may exist per key at a time.
    """
    entity_id: str
    field: str
    previous_value: Any
    intended_value: Any
    request_id: str
    state: MutationState = MutationState.PENDING
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    settled_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.entity_id, self.field)

    @property
    def is_pending(self) -> bool:
        return self.state == MutationState.PENDING

    def settle(self, state: MutationState, error: Optional[str] = None) -> None:
        self.state = state
        self.error = error
        self.settled_at = datetime.now(timezone.utc)
