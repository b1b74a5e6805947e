"""
Optimistic mutation controller.

Every user action follows the same protocol:

    1. take the per-(entity, field) lock, read the current value
    2. write the intended value to the store as OPTIMISTIC (pending)
    3. issue the remote call with the configured timeout
    4a. success → settle, mark COMMITTED, merge the authoritative value (REST)
    4b. failure → settle, write the rollback value (REST), mark ROLLED_BACK

Failures come back as typed outcomes and are never swallowed. Bad input
raises ValidationFailure before anything touches the store.

Bulk actions apply every optimistic write inside one store batch, issue
the remote calls concurrently and do not roll back failed members: those
are marked UNRESOLVED and a reconciliation refresh is requested instead.
"""
import asyncio
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from tradestate.domain.mapping import closing_patch, patch_for, payload_id
from tradestate.domain.models import (
    EntityKind,
    MutationState,
    PendingMutation,
    Position,
    StrategySubscription,
    TradeMode,
    WriteSource,
    position_key,
    strategy_key,
)
from tradestate.domain.protocols import MutationGateway, MutationResult
from tradestate.exceptions import (
    DataError,
    PartialBulkFailure,
    TradeStateError,
    TransportFailure,
    ValidationFailure,
)
from tradestate.execution.sltp_calculator import SideConvention, SlTpInput, compute_protection
from tradestate.monitoring.logger import get_logger, log_context
from tradestate.state.store import StateStore

logger = get_logger(__name__)

RemoteCall = Callable[[], Awaitable[Any]]


@dataclass
class MutationOutcome:
    """Result of one user action."""
    ok: bool
    state: MutationState
    entity_id: str
    mutations: List[PendingMutation] = field(default_factory=list)
    error: Optional[TradeStateError] = None
    data: Optional[Mapping[str, Any]] = None


@dataclass
class BulkOutcome:
    """Result of a bulk action. error is set when any member failed."""
    ok: bool
    outcomes: Dict[str, MutationOutcome] = field(default_factory=dict)
    error: Optional[PartialBulkFailure] = None

    @property
    def failed(self) -> List[str]:
        return [entity_id for entity_id, outcome in self.outcomes.items() if not outcome.ok]


class OptimisticMutationController:
    """Runs user actions against the store and the mutation gateway."""

    def __init__(
        self,
        store: StateStore,
        gateway: MutationGateway,
        *,
        request_timeout: float = 30.0,
        rollback_target: str = "snapshot",
        history_size: int = 200,
        side_convention: SideConvention = SideConvention.SIDE_AWARE,
        request_refresh: Optional[Callable[[], Any]] = None,
    ):
        if rollback_target not in ("snapshot", "latest_known"):
            raise ValueError(f"Unknown rollback target: {rollback_target}")
        self.store = store
        self.gateway = gateway
        self.request_timeout = request_timeout
        self.rollback_target = rollback_target
        self.side_convention = side_convention
        self.request_refresh = request_refresh
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}
        self._pending: Dict[Tuple[str, str], PendingMutation] = {}
        self._history: Deque[PendingMutation] = deque(maxlen=history_size)

    # ========== ENTRY POINTS ==========

    async def pause_resume(self, subscription_id: Any) -> MutationOutcome:
        """Flip is_paused. The flip is computed from the settled value."""
        return await self._strategy_flag(subscription_id, "is_paused", lambda current: not current)

    async def set_paused(self, subscription_id: Any, paused: bool) -> MutationOutcome:
        return await self._strategy_flag(subscription_id, "is_paused", lambda current: bool(paused))

    async def toggle_active(self, subscription_id: Any) -> MutationOutcome:
        return await self._strategy_flag(subscription_id, "is_active", lambda current: not current)

    async def set_trade_mode(self, subscription_id: Any, mode: Any) -> MutationOutcome:
        try:
            trade_mode = TradeMode(mode.value if isinstance(mode, TradeMode) else str(mode).strip().lower())
        except ValueError:
            raise ValidationFailure(f"unknown trade mode {mode!r}")
        entity_id = strategy_key(subscription_id)
        self._require(entity_id, StrategySubscription)

        return await self._mutate(
            entity_id,
            ("trade_mode",),
            lambda current: {"trade_mode": trade_mode},
            lambda intended: self.gateway.set_trade_mode(str(subscription_id), trade_mode),
            action="set_trade_mode",
        )

    async def submit_sl_tp(
        self,
        position_id: Any,
        stop_loss: Optional[SlTpInput] = None,
        take_profit: Optional[SlTpInput] = None,
        convention: Optional[SideConvention] = None,
    ) -> MutationOutcome:
        """
        Convert user stop/target input to trigger prices and submit them.

        Raises ValidationFailure for bad input, an unknown position, or a
        closed one.
        """
        entity_id = position_key(position_id)
        position = self._require_open_position(entity_id)
        stop, target = compute_protection(
            position.entry_price,
            position.side,
            stop_loss=stop_loss,
            take_profit=take_profit,
            convention=convention or self.side_convention,
        )
        intended: Dict[str, Any] = {}
        if stop is not None:
            intended["stop_loss"] = stop
        if target is not None:
            intended["take_profit"] = target

        def build(current: Position) -> Dict[str, Any]:
            if not current.is_open:
                raise ValidationFailure(f"position {position_id} closed while waiting")
            return dict(intended)

        return await self._mutate(
            entity_id,
            tuple(sorted(intended)),
            build,
            lambda values: self.gateway.modify_position(
                str(position_id),
                stop_loss=values.get("stop_loss"),
                take_profit=values.get("take_profit"),
            ),
            action="submit_sl_tp",
        )

    async def close_position(self, position_id: Any) -> MutationOutcome:
        """
        Close a position. Not optimistic: the store only changes once the
        server confirms, from the authoritative response.
        """
        entity_id = position_key(position_id)
        self._require_open_position(entity_id)

        request_id = uuid.uuid4().hex
        with log_context(request_id=request_id, action="close_position"):
            async with self._locked([(entity_id, "status")]):
                position = self._require_open_position(entity_id)
                mutation = self._track(entity_id, "status", position.status, "closed", request_id)
                try:
                    result, error = await self._call(
                        lambda: self.gateway.close_position(str(position_id)),
                        "close_position",
                    )
                except asyncio.CancelledError:
                    self._finish(mutation, MutationState.ROLLED_BACK, "cancelled")
                    raise

                if error is not None:
                    self._finish(mutation, MutationState.ROLLED_BACK, str(error))
                    logger.warning("POSITION_CLOSE_FAILED", entity_id=entity_id, error=str(error))
                    return MutationOutcome(False, MutationState.ROLLED_BACK, entity_id, [mutation], error)

                data = result.data if result is not None else None
                patch: Dict[str, Any] = {}
                if data:
                    try:
                        patch = patch_for(EntityKind.POSITION, data)
                    except DataError as e:
                        logger.warning("MUTATION_RESPONSE_MALFORMED", entity_id=entity_id, error=str(e))
                self.store.upsert(entity_id, closing_patch(patch), WriteSource.REST, self.store.next_sequence())
                self._finish(mutation, MutationState.COMMITTED)
                logger.info("POSITION_CLOSED", entity_id=entity_id)
                return MutationOutcome(True, MutationState.COMMITTED, entity_id, [mutation], data=data)

    async def bulk_pause_all(self, subscription_ids: Optional[Iterable[Any]] = None) -> BulkOutcome:
        """Pause every subscription (or the given ones)."""
        return await self.bulk_set_paused(True, subscription_ids)

    async def bulk_set_paused(self, paused: bool, subscription_ids: Optional[Iterable[Any]] = None) -> BulkOutcome:
        """
        Set is_paused on many subscriptions at once.

        One store notification for the optimistic pass, remote calls in
        parallel. Failed members keep the optimistic value (UNRESOLVED) and
        a reconciliation refresh is requested.
        """
        if subscription_ids is None:
            entity_ids = [strategy_key(sub.id) for sub in self.store.subscriptions()]
        else:
            entity_ids = list(dict.fromkeys(strategy_key(sub_id) for sub_id in subscription_ids))
        for entity_id in entity_ids:
            self._require(entity_id, StrategySubscription)
        if not entity_ids:
            return BulkOutcome(ok=True)

        with log_context(bulk_id=uuid.uuid4().hex, action="bulk_set_paused"):
            return await self._bulk_set_paused(entity_ids, bool(paused))

    async def _bulk_set_paused(self, entity_ids: List[str], paused: bool) -> BulkOutcome:
        async with self._locked([(entity_id, "is_paused") for entity_id in entity_ids]):
            members: Dict[str, List[PendingMutation]] = {}
            with self.store.batch():
                for entity_id in entity_ids:
                    current = self.store.find(entity_id)
                    if current is None:
                        logger.info("BULK_MEMBER_REMOVED", entity_id=entity_id)
                        continue
                    members[entity_id] = self._apply_optimistic(entity_id, current, {"is_paused": paused})
            entity_ids = list(members)

            def call_for(entity_id: str) -> RemoteCall:
                raw_id = entity_id.partition(":")[2]
                return lambda: self.gateway.update_strategy(raw_id, is_paused=paused)

            try:
                results = await asyncio.gather(
                    *(self._call(call_for(entity_id), "bulk_set_paused") for entity_id in entity_ids)
                )
            except asyncio.CancelledError:
                with self.store.batch():
                    for entity_id, mutations in members.items():
                        self._rollback(entity_id, mutations, TransportFailure("cancelled"))
                raise

            outcomes: Dict[str, MutationOutcome] = {}
            failures: Dict[str, TradeStateError] = {}
            with self.store.batch():
                for entity_id, (result, error) in zip(entity_ids, results):
                    mutations = members[entity_id]
                    if error is None:
                        data = result.data if result is not None else None
                        self._commit(entity_id, mutations, data)
                        outcomes[entity_id] = MutationOutcome(True, MutationState.COMMITTED, entity_id, mutations, data=data)
                        continue
                    for mutation in mutations:
                        self.store.settle(entity_id, mutation.field)
                        self._finish(mutation, MutationState.UNRESOLVED, str(error))
                    failures[entity_id] = error
                    outcomes[entity_id] = MutationOutcome(False, MutationState.UNRESOLVED, entity_id, mutations, error)

        bulk_error = None
        if failures:
            refresh_requested = False
            if self.request_refresh is not None:
                self.request_refresh()
                refresh_requested = True
            bulk_error = PartialBulkFailure(failures, total=len(entity_ids), refresh_requested=refresh_requested)
            logger.warning(
                "BULK_MUTATION_PARTIAL_FAILURE",
                paused=paused,
                total=len(entity_ids),
                failed=sorted(failures),
                refresh_requested=refresh_requested,
            )
        else:
            logger.info("BULK_MUTATION_COMMITTED", paused=paused, total=len(entity_ids))
        return BulkOutcome(ok=not failures, outcomes=outcomes, error=bulk_error)

    # ========== INSPECTION ==========

    def pending_mutation(self, entity_id: str, field_name: str) -> Optional[PendingMutation]:
        """The in-flight mutation for a store key and field, if any."""
        return self._pending.get((entity_id, field_name))

    def history(self) -> List[PendingMutation]:
        """Settled mutations, oldest first."""
        return list(self._history)

    # ========== PROTOCOL ==========

    async def _strategy_flag(self, subscription_id: Any, field_name: str, flip: Callable[[bool], bool]) -> MutationOutcome:
        entity_id = strategy_key(subscription_id)
        self._require(entity_id, StrategySubscription)

        def call(values: Dict[str, Any]) -> Awaitable[Any]:
            return self.gateway.update_strategy(str(subscription_id), **values)

        return await self._mutate(
            entity_id,
            (field_name,),
            lambda current: {field_name: flip(getattr(current, field_name))},
            call,
            action=f"set_{field_name}",
        )

    async def _mutate(
        self,
        entity_id: str,
        field_names: Sequence[str],
        build: Callable[[Any], Dict[str, Any]],
        remote: Callable[[Dict[str, Any]], Awaitable[Any]],
        action: str,
    ) -> MutationOutcome:
        request_id = uuid.uuid4().hex
        with log_context(request_id=request_id, action=action):
            async with self._locked([(entity_id, name) for name in field_names]):
                # Intent is computed only once the key is ours
                current = self.store.find(entity_id)
                if current is None:
                    raise ValidationFailure(f"{entity_id} disappeared while waiting")
                intended = build(current)
                mutations = self._apply_optimistic(entity_id, current, intended, request_id)

                try:
                    result, error = await self._call(lambda: remote(intended), action)
                except asyncio.CancelledError:
                    self._rollback(entity_id, mutations, TransportFailure("cancelled"))
                    raise

                if error is not None:
                    self._rollback(entity_id, mutations, error)
                    return MutationOutcome(False, MutationState.ROLLED_BACK, entity_id, mutations, error)

                data = result.data if result is not None else None
                self._commit(entity_id, mutations, data)
                return MutationOutcome(True, MutationState.COMMITTED, entity_id, mutations, data=data)

    def _apply_optimistic(
        self,
        entity_id: str,
        current: Any,
        intended: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> List[PendingMutation]:
        request_id = request_id or uuid.uuid4().hex
        mutations = [
            self._track(entity_id, name, getattr(current, name), value, request_id)
            for name, value in intended.items()
        ]
        result = self.store.upsert(entity_id, intended, WriteSource.OPTIMISTIC, self.store.next_sequence())
        logger.debug(
            "MUTATION_PENDING",
            entity_id=entity_id,
            request_id=request_id,
            fields=list(intended),
            applied=list(result.applied),
            reason=result.reason,
        )
        return mutations

    async def _call(self, remote: RemoteCall, action: str) -> Tuple[Optional[MutationResult], Optional[TransportFailure]]:
        """Issue a remote call. Errors come back as values; cancellation propagates."""
        try:
            raw = await asyncio.wait_for(remote(), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            return None, TransportFailure(f"{action} timed out after {self.request_timeout}s", timed_out=True)
        except Exception as e:
            return None, TransportFailure(f"{action} failed: {e}")

        result = MutationResult.from_dict(raw) if isinstance(raw, Mapping) else raw
        if not isinstance(result, MutationResult):
            return None, TransportFailure(f"{action} returned {type(raw).__name__}, expected MutationResult")
        if not result.success:
            return result, TransportFailure(result.error or f"{action} was refused")
        return result, None

    def _commit(self, entity_id: str, mutations: List[PendingMutation], data: Optional[Mapping[str, Any]]) -> None:
        superseded = self._superseded(entity_id, mutations)
        for mutation in mutations:
            self.store.settle(entity_id, mutation.field)
            self._finish(mutation, MutationState.COMMITTED)

        authoritative = {
            name: value
            for name, value in self._authoritative(entity_id, mutations, data).items()
            if name not in superseded
        }
        if authoritative:
            self.store.upsert(entity_id, authoritative, WriteSource.REST, self.store.next_sequence())
        logger.info(
            "MUTATION_COMMITTED",
            entity_id=entity_id,
            request_id=mutations[0].request_id if mutations else None,
            fields=[m.field for m in mutations],
            superseded=sorted(superseded),
        )

    def _rollback(self, entity_id: str, mutations: List[PendingMutation], error: TradeStateError) -> None:
        superseded = self._superseded(entity_id, mutations)
        patch: Dict[str, Any] = {}
        for mutation in mutations:
            shadow = self.store.settle(entity_id, mutation.field)
            self._finish(mutation, MutationState.ROLLED_BACK, str(error))
            latest = self.rollback_target == "latest_known" and shadow is not None
            if mutation.field in superseded:
                # the realtime value already replaced ours; keep it unless a newer REST write was refused
                if latest and shadow.sequence > superseded[mutation.field]:
                    patch[mutation.field] = shadow.value
                continue
            patch[mutation.field] = shadow.value if latest else mutation.previous_value

        if patch:
            self.store.upsert(entity_id, patch, WriteSource.REST, self.store.next_sequence())
        logger.warning(
            "MUTATION_ROLLED_BACK",
            entity_id=entity_id,
            request_id=mutations[0].request_id if mutations else None,
            fields=list(patch),
            superseded=sorted(superseded),
            rollback_target=self.rollback_target,
            error=str(error),
        )

    def _superseded(self, entity_id: str, mutations: List[PendingMutation]) -> Dict[str, int]:
        """Mutated fields a newer realtime write replaced while pending, with its sequence."""
        out: Dict[str, int] = {}
        for mutation in mutations:
            stamp = self.store.field_timestamp(entity_id, mutation.field)
            if stamp is not None and stamp.pending and stamp.source == WriteSource.REALTIME:
                out[mutation.field] = stamp.sequence
        return out

    def _authoritative(
        self,
        entity_id: str,
        mutations: List[PendingMutation],
        data: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """Values for the mutated fields carried by the response, if any."""
        if not data:
            return {}
        kind = EntityKind.POSITION if entity_id.startswith(f"{EntityKind.POSITION.value}:") else EntityKind.STRATEGY
        response_id = payload_id(data)
        if response_id is not None and response_id != entity_id.partition(":")[2]:
            return {}
        try:
            patch = patch_for(kind, data)
        except DataError as e:
            logger.warning("MUTATION_RESPONSE_MALFORMED", entity_id=entity_id, error=str(e))
            return {}
        return {m.field: patch[m.field] for m in mutations if m.field in patch}

    # ========== BOOKKEEPING ==========

    def _track(
        self,
        entity_id: str,
        field_name: str,
        previous: Any,
        intended: Any,
        request_id: Optional[str] = None,
    ) -> PendingMutation:
        mutation = PendingMutation(
            entity_id=entity_id,
            field=field_name,
            previous_value=previous,
            intended_value=intended,
            request_id=request_id or uuid.uuid4().hex,
        )
        self._pending[mutation.key] = mutation
        return mutation

    def _finish(self, mutation: PendingMutation, state: MutationState, error: Optional[str] = None) -> None:
        mutation.settle(state, error)
        if self._pending.get(mutation.key) is mutation:
            del self._pending[mutation.key]
        self._history.append(mutation)

    @asynccontextmanager
    async def _locked(self, keys: Iterable[Tuple[str, str]]):
        # Sorted acquisition keeps bulk and single actions deadlock-free
        ordered = sorted(set(keys))
        locks = []
        for key in ordered:
            locks.append(self._locks.setdefault(key, asyncio.Lock()))
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        acquired: List[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._lock_users[key] -= 1
                if not self._lock_users[key]:
                    del self._lock_users[key]
                    del self._locks[key]

    def _require(self, entity_id: str, expected: type) -> Any:
        entity = self.store.find(entity_id)
        if entity is None or not isinstance(entity, expected):
            raise ValidationFailure(f"unknown entity {entity_id}")
        return entity

    def _require_open_position(self, entity_id: str) -> Position:
        position = self._require(entity_id, Position)
        if not position.is_open:
            raise ValidationFailure(f"position {entity_id} is closed")
        return position
