"""
Composition root.

Wires one store, one ingester, one controller and one scheduler around a
shared logical clock. Presentation layers use:

    core.store.subscribe / core.store.get
    core.controller.<action>(...)
    core.ingester.ingest_wire(...)   (from the push transport)
    await core.start() / await core.stop()
"""
from typing import Optional

from tradestate.config.config import Config
from tradestate.domain.protocols import MutationGateway, SnapshotSource
from tradestate.execution.mutation_controller import OptimisticMutationController
from tradestate.execution.sltp_calculator import SideConvention
from tradestate.monitoring.logger import get_logger
from tradestate.realtime.ingester import RealtimeEventIngester
from tradestate.reconciliation.reconciler import ReconciliationScheduler
from tradestate.state.store import SequenceClock, StateStore

logger = get_logger(__name__)


class TradeStateCore:
    """Holds the wired components for one client instance."""

    def __init__(
        self,
        store: StateStore,
        ingester: RealtimeEventIngester,
        controller: OptimisticMutationController,
        scheduler: ReconciliationScheduler,
        config: Config,
    ):
        self.store = store
        self.ingester = ingester
        self.controller = controller
        self.scheduler = scheduler
        self.config = config

    async def start(self) -> None:
        """Start periodic reconciliation (no-op when disabled)."""
        self.scheduler.start()
        logger.info("CORE_STARTED", reconciliation_enabled=self.scheduler.enabled)

    async def stop(self) -> None:
        await self.scheduler.stop()
        logger.info("CORE_STOPPED", ingest_stats=self.ingester.stats.as_dict())


def build_core(
    config: Optional[Config],
    snapshot_source: SnapshotSource,
    gateway: MutationGateway,
) -> TradeStateCore:
    """Build a core from configuration and the two remote collaborators."""
    config = config or Config()
    store = StateStore(SequenceClock(config.store.initial_sequence))
    ingester = RealtimeEventIngester(store, require_sequence=config.realtime.require_sequence)
    scheduler = ReconciliationScheduler(
        store,
        snapshot_source,
        interval_seconds=config.reconciliation.interval_seconds,
        enabled=config.reconciliation.enabled,
        refresh_on_start=config.reconciliation.refresh_on_start,
        request_timeout=config.mutations.request_timeout_seconds,
    )
    controller = OptimisticMutationController(
        store,
        gateway,
        request_timeout=config.mutations.request_timeout_seconds,
        rollback_target=config.mutations.rollback_target,
        history_size=config.mutations.history_size,
        side_convention=SideConvention(config.sltp.side_convention),
        request_refresh=scheduler.request_refresh,
    )
    logger.debug(
        "CORE_BUILT",
        rollback_target=config.mutations.rollback_target,
        side_convention=config.sltp.side_convention,
        request_timeout_seconds=config.mutations.request_timeout_seconds,
    )
    return TradeStateCore(store, ingester, controller, scheduler, config)
