"""
StateStore: creation, field precedence, pending optimistic fields,
closed immutability and observer notifications.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from tradestate.domain.models import (
    PositionStatus,
    Side,
    TradeMode,
    WriteSource,
    parse_key,
    position_key,
    strategy_key,
)
from tradestate.exceptions import EntityNotFoundError
from tradestate.state.store import SequenceClock, StateStore, StoreChange

REST = WriteSource.REST
REALTIME = WriteSource.REALTIME
OPTIMISTIC = WriteSource.OPTIMISTIC


def _position(**overrides):
    patch = {
        "symbol": "BTCUSD",
        "side": Side.LONG,
        "volume": Decimal("0.1"),
        "entry_price": Decimal("50000"),
        "current_price": Decimal("50100"),
        "profit": Decimal("10"),
        "status": PositionStatus.OPEN,
        "opened_at": datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc),
    }
    patch.update(overrides)
    return patch


def _subscription(**overrides):
    patch = {
        "strategy_id": "7",
        "is_active": True,
        "is_paused": False,
        "trade_mode": TradeMode.PAPER,
        "lots": Decimal("1"),
    }
    patch.update(overrides)
    return patch


PID = position_key(1)
SID = strategy_key(11)


def test_keys_are_namespaced():
    assert PID == "position:1"
    assert SID == "strategy:11"
    assert parse_key("strategy:11")[1] == "11"
    with pytest.raises(ValueError):
        parse_key("11")
    with pytest.raises(ValueError):
        parse_key("order:11")


def test_clock_is_monotonic():
    clock = SequenceClock(start=5)
    assert clock.current == 5
    assert clock.next() == 6
    assert clock.next() == 7


def test_create_requires_every_required_field(store):
    result = store.upsert(PID, {"symbol": "BTCUSD"}, REST, 1)

    assert not result.accepted
    assert result.reason == "incomplete"
    assert PID not in store


def test_create_and_get_returns_copy(store):
    result = store.upsert(PID, _position(), REST, 1)
    assert result.created

    position = store.get(PID)
    assert position.id == "1"
    assert position.is_open
    position.current_price = Decimal("1")
    assert store.get(PID).current_price == Decimal("50100")


def test_get_missing_raises_not_found(store):
    with pytest.raises(EntityNotFoundError) as exc_info:
        store.get(PID)
    assert isinstance(exc_info.value, KeyError)
    assert store.find(PID) is None


def test_invalid_key_is_dropped_not_raised(store):
    result = store.upsert("nonsense", _position(), REST, 1)
    assert result.reason == "invalid_key"
    assert len(store) == 0


def test_unknown_fields_are_dropped(store):
    store.upsert(PID, _position(), REST, 1)
    result = store.upsert(PID, {"current_price": Decimal("50200"), "leverage": 5}, REALTIME, 2)

    assert result.applied == ("current_price",)
    assert not hasattr(store.get(PID), "leverage")


def test_rest_cannot_override_newer_realtime(store):
    store.upsert(PID, _position(), REST, 1)
    store.upsert(PID, {"current_price": Decimal("50300")}, REALTIME, 5)

    result = store.upsert(PID, {"current_price": Decimal("50100")}, REST, 3)

    assert result.rejected == ("current_price",)
    assert store.get(PID).current_price == Decimal("50300")


def test_rest_cannot_override_realtime_at_equal_sequence(store):
    store.upsert(PID, _position(), REST, 1)
    store.upsert(PID, {"current_price": Decimal("50300")}, REALTIME, 5)

    result = store.upsert(PID, {"current_price": Decimal("50100")}, REST, 5)

    assert not result.accepted
    assert store.get(PID).current_price == Decimal("50300")


def test_realtime_overrides_rest_at_equal_sequence(store):
    store.upsert(PID, _position(), REST, 5)

    result = store.upsert(PID, {"current_price": Decimal("50300")}, REALTIME, 5)

    assert result.applied == ("current_price",)
    assert store.get(PID).current_price == Decimal("50300")


def test_newer_realtime_overrides_older_realtime(store):
    store.upsert(PID, _position(), REALTIME, 1)
    store.upsert(PID, {"profit": Decimal("20")}, REALTIME, 2)
    assert store.upsert(PID, {"profit": Decimal("15")}, REALTIME, 2).rejected == ("profit",)
    assert store.get(PID).profit == Decimal("20")


def test_precedence_is_per_field(store):
    store.upsert(PID, _position(), REST, 1)
    store.upsert(PID, {"current_price": Decimal("50300")}, REALTIME, 5)

    result = store.upsert(PID, {"current_price": Decimal("50100"), "stop_loss": Decimal("49000")}, REST, 3)

    assert result.applied == ("stop_loss",)
    assert result.rejected == ("current_price",)
    position = store.get(PID)
    assert position.current_price == Decimal("50300")
    assert position.stop_loss == Decimal("49000")


def test_pending_optimistic_refuses_rest_writes(store):
    store.upsert(SID, _subscription(), REST, 1)
    store.upsert(SID, {"is_paused": True}, OPTIMISTIC, 2)

    assert store.pending_fields(SID) == {"is_paused"}
    assert store.upsert(SID, {"is_paused": False}, REST, 11).rejected == ("is_paused",)
    assert store.get(SID).is_paused is True


def test_newer_realtime_write_lands_on_pending_field(store):
    store.upsert(SID, _subscription(), REST, 1)
    store.upsert(SID, {"is_paused": True}, OPTIMISTIC, 3)

    assert store.upsert(SID, {"is_paused": False}, REALTIME, 2).rejected == ("is_paused",)
    assert store.upsert(SID, {"is_paused": False}, REALTIME, 4).applied == ("is_paused",)

    stamp = store.field_timestamp(SID, "is_paused")
    assert stamp.source == REALTIME
    assert stamp.pending
    assert store.get(SID).is_paused is False
    # still under the mutation, so a snapshot cannot touch it
    assert store.upsert(SID, {"is_paused": True}, REST, 5).rejected == ("is_paused",)
    assert store.get(SID).is_paused is False


def test_settle_returns_latest_shadowed_write(store):
    store.upsert(SID, _subscription(), REST, 1)
    store.upsert(SID, {"trade_mode": TradeMode.LIVE}, OPTIMISTIC, 2)
    store.upsert(SID, {"trade_mode": TradeMode.PAPER}, REALTIME, 3)
    store.upsert(SID, {"trade_mode": TradeMode.LIVE}, REST, 4)

    shadow = store.settle(SID, "trade_mode")

    assert shadow.value == TradeMode.LIVE
    assert shadow.source == REST
    assert shadow.sequence == 4
    assert store.pending_fields(SID) == set()
    assert store.settle(SID, "trade_mode") is None


def test_settled_optimistic_ranks_with_rest(store):
    store.upsert(SID, _subscription(), REST, 1)
    store.upsert(SID, {"is_paused": True}, OPTIMISTIC, 2)
    store.settle(SID, "is_paused")

    assert store.field_timestamp(SID, "is_paused").rank == 1
    assert store.upsert(SID, {"is_paused": False}, REST, 1).rejected == ("is_paused",)
    assert store.upsert(SID, {"is_paused": False}, REALTIME, 2).applied == ("is_paused",)


def test_optimistic_write_never_creates(store):
    result = store.upsert(SID, _subscription(), OPTIMISTIC, 1)
    assert result.reason == "not_found"
    assert SID not in store


def test_closed_position_is_immutable(store):
    closed_at = datetime(2026, 1, 6, tzinfo=timezone.utc)
    store.upsert(PID, _position(status=PositionStatus.CLOSED, closed_at=closed_at), REST, 1)

    for source, sequence in ((REALTIME, 10), (REST, 11), (OPTIMISTIC, 12)):
        result = store.upsert(PID, {"status": PositionStatus.OPEN, "current_price": Decimal("1")}, source, sequence)
        assert result.reason == "closed_immutable"

    position = store.get(PID)
    assert position.is_closed
    assert position.current_price == Decimal("50100")


def test_open_and_closed_views_derive_from_status(store):
    store.upsert(position_key(1), _position(), REST, 1)
    store.upsert(position_key(2), _position(), REST, 1)
    store.upsert(SID, _subscription(), REST, 1)

    store.upsert(
        position_key(2),
        {"status": PositionStatus.CLOSED, "closed_at": datetime.now(timezone.utc)},
        REALTIME,
        2,
    )

    assert [p.id for p in store.open_positions()] == ["1"]
    assert [p.id for p in store.closed_positions()] == ["2"]
    assert [s.id for s in store.subscriptions()] == ["11"]


def test_positions_for_strategy(store):
    store.upsert(position_key(1), _position(strategy_id="7"), REST, 1)
    store.upsert(position_key(2), _position(strategy_id="8"), REST, 1)
    assert [p.id for p in store.positions_for_strategy(7)] == ["1"]


def test_observer_called_after_accepted_writes_only(store):
    observer = MagicMock()
    store.subscribe(observer)

    store.upsert(PID, _position(), REALTIME, 5)
    store.upsert(PID, {"current_price": Decimal("1")}, REST, 1)

    observer.assert_called_once_with(StoreChange(upserted=(PID,)))


def test_unsubscribe_and_failing_observer(store):
    failing = MagicMock(side_effect=RuntimeError("boom"))
    healthy = MagicMock()
    store.subscribe(failing)
    unsubscribe = store.subscribe(healthy)

    store.upsert(PID, _position(), REST, 1)
    assert healthy.call_count == 1

    unsubscribe()
    store.upsert(PID, {"profit": Decimal("5")}, REST, 2)
    assert healthy.call_count == 1
    assert failing.call_count == 2


def test_batch_coalesces_notifications(store):
    observer = MagicMock()
    store.subscribe(observer)

    with store.batch():
        store.upsert(position_key(1), _position(), REST, 1)
        store.upsert(position_key(2), _position(), REST, 1)
        store.upsert(position_key(1), {"profit": Decimal("3")}, REST, 2)
        observer.assert_not_called()

    observer.assert_called_once_with(StoreChange(upserted=(position_key(1), position_key(2))))


def test_remove_notifies(store):
    store.upsert(SID, _subscription(), REST, 1)
    observer = MagicMock()
    store.subscribe(observer)

    assert store.remove(SID) is True
    assert store.remove(SID) is False
    observer.assert_called_once_with(StoreChange(removed=(SID,)))
    assert SID not in store


def test_shared_clock_between_stores():
    clock = SequenceClock()
    store = StateStore(clock)
    assert store.next_sequence() == 1
    assert clock.current == 1
