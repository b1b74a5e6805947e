"""
Precedence-aware in-memory state store.

One table of entities keyed by namespaced id ("position:42", "strategy:7"),
with a FieldTimestamp per written field. Three writers share it:

    REST        snapshot fetches        (lowest precedence)
    REALTIME    push events
    OPTIMISTIC  local user intents      (highest while pending)

A field write is accepted iff no existing stamp for that field has a
higher-or-equal sequence from a source of equal-or-higher precedence.
A field under an unresolved mutation additionally refuses every REST
write until the mutation controller settles it. A newer REALTIME write
does land on it; the field then stays pending and the controller leaves
that value alone when it settles.

The store never raises for data reasons: superseded writes come back in
UpsertResult.rejected and are logged at debug level.

All operations are synchronous, so under a single event loop each
read-modify-write is atomic with respect to other tasks.
"""
import copy
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from tradestate.domain.models import (
    ENTITY_TYPES,
    EntityKind,
    FieldTimestamp,
    Position,
    PositionStatus,
    ShadowWrite,
    SOURCE_RANK,
    StrategySubscription,
    WriteSource,
    entity_fields,
    parse_key,
    required_fields,
)
from tradestate.exceptions import EntityNotFoundError
from tradestate.monitoring.logger import get_logger

logger = get_logger(__name__)


class SequenceClock:
    """
    Monotonic logical clock shared by every writer.

    Values are only compared with each other, never with wall-clock time.
    """

    def __init__(self, start: int = 0):
        self._value = start

    @property
    def current(self) -> int:
        return self._value

    def next(self) -> int:
        self._value += 1
        return self._value


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one upsert. Never raised, always returned."""
    entity_id: str
    applied: Tuple[str, ...] = ()
    rejected: Tuple[str, ...] = ()
    changed: Tuple[str, ...] = ()
    created: bool = False
    reason: Optional[str] = None  # set when the whole write was refused

    @property
    def accepted(self) -> bool:
        return bool(self.applied) or self.created


@dataclass(frozen=True)
class StoreChange:
    """Notification delivered to observers."""
    upserted: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()


Observer = Callable[[StoreChange], None]


@dataclass
class _Record:
    entity: Any
    stamps: Dict[str, FieldTimestamp] = field(default_factory=dict)


class StateStore:
    """
    The single shared mutable resource of the core.

    Readers get copies; only upsert/remove/settle mutate.
    """

    def __init__(self, clock: Optional[SequenceClock] = None):
        self.clock = clock or SequenceClock()
        self._records: Dict[str, _Record] = {}
        self._observers: List[Observer] = []
        self._batch_depth = 0
        self._batch_upserted: List[str] = []
        self._batch_removed: List[str] = []

    # ========== CLOCK ==========

    def next_sequence(self) -> int:
        return self.clock.next()

    # ========== READS ==========

    def get(self, entity_id: str) -> Any:
        """Current merged view. Raises EntityNotFoundError."""
        record = self._records.get(entity_id)
        if record is None:
            raise EntityNotFoundError(entity_id)
        return copy.copy(record.entity)

    def find(self, entity_id: str) -> Optional[Any]:
        record = self._records.get(entity_id)
        return copy.copy(record.entity) if record else None

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def field_timestamp(self, entity_id: str, field_name: str) -> Optional[FieldTimestamp]:
        record = self._records.get(entity_id)
        if record is None:
            return None
        return record.stamps.get(field_name)

    def pending_fields(self, entity_id: str) -> Set[str]:
        record = self._records.get(entity_id)
        if record is None:
            return set()
        return {name for name, stamp in record.stamps.items() if stamp.pending}

    def entities(self, kind: Optional[EntityKind] = None) -> List[Any]:
        out = []
        for entity_id, record in self._records.items():
            if kind is None or parse_key(entity_id)[0] == kind:
                out.append(copy.copy(record.entity))
        return out

    def positions(self) -> List[Position]:
        return self.entities(EntityKind.POSITION)

    def open_positions(self) -> List[Position]:
        """Derived view: membership is status == OPEN, not a separate list."""
        return [p for p in self.positions() if p.status == PositionStatus.OPEN]

    def closed_positions(self) -> List[Position]:
        return [p for p in self.positions() if p.status == PositionStatus.CLOSED]

    def positions_for_strategy(self, strategy_id: str) -> List[Position]:
        return [p for p in self.positions() if p.strategy_id == str(strategy_id)]

    def subscriptions(self) -> List[StrategySubscription]:
        return self.entities(EntityKind.STRATEGY)

    # ========== WRITES ==========

    def upsert(
        self,
        entity_id: str,
        patch: Mapping[str, Any],
        source: WriteSource,
        sequence: int,
    ) -> UpsertResult:
        """
        Apply patch field-by-field under the precedence rule.

        Creates the entity when it is missing and the patch carries every
        required field. Optimistic writes never create.
        """
        try:
            kind, raw_id = parse_key(entity_id)
        except ValueError:
            logger.warning("STORE_WRITE_DROPPED", entity_id=entity_id, reason="invalid_key")
            return UpsertResult(entity_id, rejected=tuple(patch), reason="invalid_key")

        allowed = entity_fields(kind)
        unknown = [name for name in patch if name not in allowed]
        if unknown:
            logger.debug("STORE_UNKNOWN_FIELDS", entity_id=entity_id, fields=unknown)
        values = {name: value for name, value in patch.items() if name in allowed}

        record = self._records.get(entity_id)
        if record is None:
            return self._create(entity_id, kind, raw_id, values, source, sequence)

        entity = record.entity
        if isinstance(entity, Position) and entity.status == PositionStatus.CLOSED:
            logger.debug(
                "STORE_WRITE_REJECTED",
                entity_id=entity_id,
                reason="closed_immutable",
                source=source.value,
                sequence=sequence,
            )
            return UpsertResult(entity_id, rejected=tuple(values), reason="closed_immutable")

        applied: List[str] = []
        rejected: List[str] = []
        changed: List[str] = []
        updates: Dict[str, Any] = {}
        for name, value in values.items():
            stamp = record.stamps.get(name)
            if not self._accepts(stamp, source, sequence):
                rejected.append(name)
                if stamp is not None and stamp.pending and source == WriteSource.REST:
                    record.stamps[name] = self._with_shadow(stamp, value, source, sequence)
                continue
            if stamp is not None and stamp.pending and source == WriteSource.REALTIME:
                # superseded by the server while the mutation is in flight
                record.stamps[name] = FieldTimestamp(source=source, sequence=sequence, pending=True, shadow=stamp.shadow)
            else:
                record.stamps[name] = FieldTimestamp(
                    source=source,
                    sequence=sequence,
                    pending=source == WriteSource.OPTIMISTIC,
                )
            applied.append(name)
            if getattr(entity, name) != value:
                changed.append(name)
            updates[name] = value

        if updates:
            record.entity = replace(entity, **updates)

        if rejected:
            logger.debug(
                "STORE_WRITE_REJECTED",
                entity_id=entity_id,
                fields=rejected,
                source=source.value,
                sequence=sequence,
            )

        result = UpsertResult(
            entity_id,
            applied=tuple(applied),
            rejected=tuple(rejected),
            changed=tuple(changed),
        )
        if result.accepted:
            self._notify(upserted=[entity_id])
        return result

    def remove(self, entity_id: str) -> bool:
        """
        Drop an entity confirmed deleted by its authoritative collaborator.

        Never used for closing a position: closing is a status transition.
        """
        if self._records.pop(entity_id, None) is None:
            logger.debug("STORE_REMOVE_MISSING", entity_id=entity_id)
            return False
        logger.info("STORE_ENTITY_REMOVED", entity_id=entity_id)
        self._notify(removed=[entity_id])
        return True

    def settle(self, entity_id: str, field_name: str) -> Optional[ShadowWrite]:
        """
        Clear the pending flag of a field under mutation.

        After settling, ordinary precedence applies to the field. Returns
        the most recent REST write that was refused only because the field
        was pending, if any.
        """
        record = self._records.get(entity_id)
        if record is None:
            return None
        stamp = record.stamps.get(field_name)
        if stamp is None or not stamp.pending:
            return None
        record.stamps[field_name] = replace(stamp, pending=False, shadow=None)
        return stamp.shadow

    # ========== OBSERVERS ==========

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        """Register an observer. Returns an unsubscribe callable."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    @contextmanager
    def batch(self) -> Iterator["StateStore"]:
        """Coalesce notifications from every write in the block into one."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                upserted, removed = self._batch_upserted, self._batch_removed
                self._batch_upserted, self._batch_removed = [], []
                if upserted or removed:
                    self._emit(StoreChange(
                        upserted=tuple(dict.fromkeys(upserted)),
                        removed=tuple(dict.fromkeys(removed)),
                    ))

    # ========== INTERNALS ==========

    @staticmethod
    def _accepts(stamp: Optional[FieldTimestamp], source: WriteSource, sequence: int) -> bool:
        if stamp is None:
            return True
        if stamp.pending and source == WriteSource.REST:
            return False
        return not (stamp.sequence >= sequence and stamp.rank >= SOURCE_RANK[source])

    @staticmethod
    def _with_shadow(stamp: FieldTimestamp, value: Any, source: WriteSource, sequence: int) -> FieldTimestamp:
        if stamp.shadow is not None and stamp.shadow.sequence > sequence:
            return stamp
        return replace(stamp, shadow=ShadowWrite(value=value, source=source, sequence=sequence))

    def _create(
        self,
        entity_id: str,
        kind: EntityKind,
        raw_id: str,
        values: Dict[str, Any],
        source: WriteSource,
        sequence: int,
    ) -> UpsertResult:
        if source == WriteSource.OPTIMISTIC:
            logger.warning("STORE_WRITE_DROPPED", entity_id=entity_id, reason="optimistic_write_to_missing_entity")
            return UpsertResult(entity_id, rejected=tuple(values), reason="not_found")

        missing = sorted(required_fields(kind) - set(values))
        if missing:
            logger.debug("STORE_CREATE_SKIPPED", entity_id=entity_id, missing=missing, source=source.value)
            return UpsertResult(entity_id, rejected=tuple(values), reason="incomplete")

        entity = ENTITY_TYPES[kind](id=raw_id, **values)
        stamp = FieldTimestamp(source=source, sequence=sequence)
        self._records[entity_id] = _Record(entity=entity, stamps={name: stamp for name in values})
        logger.debug("STORE_ENTITY_CREATED", entity_id=entity_id, source=source.value, sequence=sequence)
        self._notify(upserted=[entity_id])
        names = tuple(values)
        return UpsertResult(entity_id, applied=names, changed=names, created=True)

    def _notify(self, upserted: Optional[List[str]] = None, removed: Optional[List[str]] = None) -> None:
        if self._batch_depth:
            self._batch_upserted.extend(upserted or [])
            self._batch_removed.extend(removed or [])
            return
        self._emit(StoreChange(upserted=tuple(upserted or ()), removed=tuple(removed or ())))

    def _emit(self, change: StoreChange) -> None:
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception as e:
                logger.error("STORE_OBSERVER_FAILED", observer=repr(observer), error=str(e))
