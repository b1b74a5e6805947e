"""
Push event contract.

A PushEvent is the normalized form of one incremental update from the
realtime stream. Two decoders produce it:

- parse_event(): the generic JSON envelope
  {"entityKind", "changeType", "payload", "sequence"}
- wire_events(): the socket event names the server emits
  (paper_position:update, strategy:update, paper:mtm_update)

Both raise MalformedEventError; the ingester turns that into a dropped
event plus a diagnostic.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from tradestate.domain.models import EntityKind
from tradestate.exceptions import MalformedEventError


class ChangeType(str, Enum):
    """What happened to the entity."""
    OPENED = "opened"
    CLOSED = "closed"
    SL_HIT = "sl_hit"
    TP_HIT = "tp_hit"
    MTM_UPDATE = "mtm_update"
    MODIFIED = "modified"
    DELETED = "deleted"

    @property
    def is_closing(self) -> bool:
        return self in (ChangeType.CLOSED, ChangeType.SL_HIT, ChangeType.TP_HIT)

    @property
    def is_sparse(self) -> bool:
        return self in (ChangeType.MTM_UPDATE, ChangeType.MODIFIED)


# Change types that make sense for subscriptions
STRATEGY_CHANGES = frozenset({ChangeType.OPENED, ChangeType.MODIFIED, ChangeType.DELETED})

# Socket event names
PAPER_POSITION_UPDATE = "paper_position:update"
STRATEGY_UPDATE = "strategy:update"
PAPER_MTM_UPDATE = "paper:mtm_update"

# The server emits short action verbs, the app used past-tense types
_POSITION_ACTIONS: Dict[str, ChangeType] = {
    "open": ChangeType.OPENED,
    "opened": ChangeType.OPENED,
    "close": ChangeType.CLOSED,
    "closed": ChangeType.CLOSED,
    "sl_hit": ChangeType.SL_HIT,
    "tp_hit": ChangeType.TP_HIT,
    "modify": ChangeType.MODIFIED,
    "modified": ChangeType.MODIFIED,
    "update": ChangeType.MODIFIED,
    "mtm": ChangeType.MTM_UPDATE,
    "mtm_update": ChangeType.MTM_UPDATE,
}

_STRATEGY_ACTIONS: Dict[str, ChangeType] = {
    "create": ChangeType.OPENED,
    "created": ChangeType.OPENED,
    "update": ChangeType.MODIFIED,
    "updated": ChangeType.MODIFIED,
    "status_change": ChangeType.MODIFIED,
    "delete": ChangeType.DELETED,
    "deleted": ChangeType.DELETED,
}


@dataclass(frozen=True)
class PushEvent:
    """One incremental update for one entity."""
    entity_kind: EntityKind
    change_type: ChangeType
    payload: Mapping[str, Any] = field(default_factory=dict)
    sequence: Optional[int] = None


def _parse_sequence(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise MalformedEventError(f"sequence must be an integer, got {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"sequence must be an integer, got {raw!r}") from e


def _entity_kind(raw: Any) -> EntityKind:
    text = str(raw).strip().lower()
    if text in ("position", "paper_position"):
        return EntityKind.POSITION
    if text in ("strategy", "subscription", "strategy_subscription"):
        return EntityKind.STRATEGY
    raise MalformedEventError(f"unknown entity kind: {raw!r}")


def _change_type(raw: Any) -> ChangeType:
    text = str(raw).strip().lower()
    # SlHit / TpHit / MtmUpdate style
    for change in ChangeType:
        if text == change.value or text == change.value.replace("_", ""):
            return change
    raise MalformedEventError(f"unknown change type: {raw!r}")


def parse_event(raw: Mapping[str, Any]) -> PushEvent:
    """Decode the generic JSON envelope into a PushEvent."""
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"event must be an object, got {type(raw).__name__}")
    kind_raw = raw.get("entityKind", raw.get("entity_kind"))
    change_raw = raw.get("changeType", raw.get("change_type"))
    if kind_raw is None or change_raw is None:
        raise MalformedEventError("event missing entityKind or changeType")
    payload = raw.get("payload")
    if not isinstance(payload, Mapping):
        raise MalformedEventError("event payload must be an object")

    kind = _entity_kind(kind_raw)
    change = _change_type(change_raw)
    if kind == EntityKind.STRATEGY and change not in STRATEGY_CHANGES:
        raise MalformedEventError(f"change type {change.value} not valid for strategies")
    return PushEvent(
        entity_kind=kind,
        change_type=change,
        payload=payload,
        sequence=_parse_sequence(raw.get("sequence")),
    )


def wire_events(event_name: str, data: Mapping[str, Any]) -> List[PushEvent]:
    """
    Decode one socket message into zero or more PushEvents.

    paper:mtm_update may carry a batch ({"positions": [...]}) or a single
    price tick ({"positionId", "currentPrice", ...}).
    """
    if not isinstance(data, Mapping):
        raise MalformedEventError(f"{event_name}: data must be an object")
    sequence = _parse_sequence(data.get("sequence"))

    if event_name == PAPER_POSITION_UPDATE:
        action = data.get("type", data.get("action"))
        change = _POSITION_ACTIONS.get(str(action).strip().lower())
        if change is None:
            raise MalformedEventError(f"{event_name}: unknown action {action!r}")
        position = data.get("position")
        if not isinstance(position, Mapping):
            raise MalformedEventError(f"{event_name}: missing position object")
        return [PushEvent(EntityKind.POSITION, change, position, sequence)]

    if event_name == STRATEGY_UPDATE:
        action = data.get("action", data.get("type"))
        change = _STRATEGY_ACTIONS.get(str(action).strip().lower())
        if change is None:
            raise MalformedEventError(f"{event_name}: unknown action {action!r}")
        strategy = data.get("strategy")
        if not isinstance(strategy, Mapping):
            raise MalformedEventError(f"{event_name}: missing strategy object")
        return [PushEvent(EntityKind.STRATEGY, change, strategy, sequence)]

    if event_name == PAPER_MTM_UPDATE:
        if "positions" in data:
            items = data["positions"]
            if not isinstance(items, list):
                raise MalformedEventError(f"{event_name}: positions must be a list")
        else:
            item = dict(data)
            if "id" not in item and "positionId" in item:
                item["id"] = item.pop("positionId")
            items = [item]
        events = []
        for item in items:
            if not isinstance(item, Mapping):
                raise MalformedEventError(f"{event_name}: position entry must be an object")
            payload = {k: v for k, v in item.items() if k in ("id", "currentPrice", "profit", "profitPercent")}
            events.append(PushEvent(EntityKind.POSITION, ChangeType.MTM_UPDATE, payload, sequence))
        return events

    raise MalformedEventError(f"unsupported event name: {event_name!r}")
