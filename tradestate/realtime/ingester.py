"""
Realtime event ingestion.

Translates push events into StateStore.upsert calls:

    opened                  → full upsert (sparse if known), status = open
    closed | sl_hit | tp_hit → status = closed, close payload merged, closed_at stamped
    mtm_update | modified   → sparse upsert of the payload fields only
    deleted (strategy)      → authoritative removal

Event sequences are per entity and come from the server. They are
translated into the store's shared logical clock: a new event sequence
takes a fresh clock value, a replay of the latest one reuses the value it
was given the first time (so the store rejects it), and an older one is
dropped as stale. Events without a sequence are ordered by arrival.

Bad events are dropped with a diagnostic. Nothing here raises.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from tradestate.domain.events import PushEvent, ChangeType, STRATEGY_CHANGES, parse_event, wire_events
from tradestate.domain.mapping import closing_patch, patch_for, payload_id
from tradestate.domain.models import CloseReason, EntityKind, PositionStatus, WriteSource, entity_key
from tradestate.exceptions import MalformedEventError
from tradestate.monitoring.logger import get_logger
from tradestate.state.store import StateStore, UpsertResult

logger = get_logger(__name__)

_CLOSE_REASONS = {
    ChangeType.CLOSED: CloseReason.CLOSED,
    ChangeType.SL_HIT: CloseReason.SL_HIT,
    ChangeType.TP_HIT: CloseReason.TP_HIT,
}


@dataclass
class IngestStats:
    received: int = 0
    applied: int = 0
    rejected: int = 0
    removed: int = 0
    stale: int = 0
    dropped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class RealtimeEventIngester:
    """Applies push events to the store under its precedence rules."""

    def __init__(self, store: StateStore, *, require_sequence: bool = False):
        self.store = store
        self.require_sequence = require_sequence
        self.stats = IngestStats()
        # entity_id -> (last event sequence, store sequence it was given)
        self._cursors: Dict[str, Tuple[int, int]] = {}

    def ingest(self, event: PushEvent) -> Optional[UpsertResult]:
        """
        Apply one event. Returns the store result, or None when the event
        was dropped or removed an entity.
        """
        self.stats.received += 1

        raw_id = payload_id(event.payload) if isinstance(event.payload, Mapping) else None
        if raw_id is None:
            return self._drop(event, "missing_id")
        entity_id = entity_key(event.entity_kind, raw_id)

        if event.entity_kind == EntityKind.STRATEGY and event.change_type not in STRATEGY_CHANGES:
            return self._drop(event, "change_type_not_valid_for_strategy", entity_id)

        if event.change_type == ChangeType.DELETED:
            if event.entity_kind != EntityKind.STRATEGY:
                return self._drop(event, "positions_close_not_delete", entity_id)
            return self._remove(event, entity_id)

        if event.sequence is None and self.require_sequence:
            return self._drop(event, "missing_sequence", entity_id)

        known = entity_id in self.store
        if event.change_type.is_sparse and not known:
            return self._drop(event, "unknown_entity", entity_id)

        try:
            patch = self._build_patch(event, full=not known)
        except MalformedEventError as e:
            return self._drop(event, "malformed_payload", entity_id, error=str(e))

        sequence = self._translate(entity_id, event.sequence)
        if sequence is None:
            self.stats.stale += 1
            logger.debug(
                "EVENT_STALE",
                entity_id=entity_id,
                change_type=event.change_type.value,
                event_sequence=event.sequence,
                last_sequence=self._cursors[entity_id][0],
            )
            return None

        result = self.store.upsert(entity_id, patch, WriteSource.REALTIME, sequence)
        if result.accepted:
            self.stats.applied += 1
        else:
            self.stats.rejected += 1
        logger.debug(
            "EVENT_APPLIED",
            entity_id=entity_id,
            change_type=event.change_type.value,
            sequence=sequence,
            applied=list(result.applied),
            rejected=list(result.rejected),
            reason=result.reason,
        )
        return result

    def ingest_raw(self, raw: Mapping[str, Any]) -> Optional[UpsertResult]:
        """Decode and apply a generic JSON envelope."""
        try:
            event = parse_event(raw)
        except MalformedEventError as e:
            self.stats.received += 1
            self.stats.dropped += 1
            logger.warning("EVENT_DROPPED", reason="malformed_envelope", error=str(e))
            return None
        return self.ingest(event)

    def ingest_wire(self, event_name: str, data: Mapping[str, Any]) -> List[Optional[UpsertResult]]:
        """Decode and apply one socket message. Batches notify observers once."""
        try:
            events = wire_events(event_name, data)
        except MalformedEventError as e:
            self.stats.received += 1
            self.stats.dropped += 1
            logger.warning("EVENT_DROPPED", reason="malformed_wire_event", event_name=event_name, error=str(e))
            return []
        with self.store.batch():
            return [self.ingest(event) for event in events]

    # ========== INTERNALS ==========

    def _build_patch(self, event: PushEvent, full: bool) -> Dict[str, Any]:
        change = event.change_type
        patch = patch_for(event.entity_kind, event.payload, full=full)
        if event.entity_kind != EntityKind.POSITION:
            return patch

        if change == ChangeType.OPENED:
            patch["status"] = PositionStatus.OPEN
        elif change.is_closing:
            patch = closing_patch(patch, _CLOSE_REASONS[change])
        else:
            # a sparse update never changes lifecycle
            patch.pop("status", None)
            patch.pop("close_reason", None)
            patch.pop("closed_at", None)
        return patch

    def _translate(self, entity_id: str, event_sequence: Optional[int]) -> Optional[int]:
        """Map an event sequence onto the store clock. None means stale."""
        if event_sequence is None:
            return self.store.next_sequence()
        cursor = self._cursors.get(entity_id)
        if cursor is not None:
            last_event, last_local = cursor
            if event_sequence < last_event:
                return None
            if event_sequence == last_event:
                return last_local
        local = self.store.next_sequence()
        self._cursors[entity_id] = (event_sequence, local)
        return local

    def _remove(self, event: PushEvent, entity_id: str) -> None:
        if event.sequence is not None and self._translate(entity_id, event.sequence) is None:
            self.stats.stale += 1
            return None
        if self.store.remove(entity_id):
            self.stats.removed += 1
        return None

    def _drop(self, event: PushEvent, reason: str, entity_id: Optional[str] = None, **extra: Any) -> None:
        self.stats.dropped += 1
        logger.warning(
            "EVENT_DROPPED",
            reason=reason,
            entity_id=entity_id,
            entity_kind=event.entity_kind.value,
            change_type=event.change_type.value,
            **extra,
        )
        return None
