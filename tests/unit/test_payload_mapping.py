"""
Wire payload → typed patch conversion, and push event decoding.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradestate.domain.events import ChangeType, PushEvent, parse_event, wire_events
from tradestate.domain.mapping import closing_patch, position_patch, subscription_patch
from tradestate.domain.models import CloseReason, EntityKind, PositionStatus, Side, TradeMode
from tradestate.exceptions import MalformedEventError


def test_full_position_payload(position_payload):
    patch = position_patch(position_payload(), full=True)

    assert patch["symbol"] == "BTCUSD"
    assert patch["side"] == Side.LONG
    assert patch["volume"] == Decimal("0.1")
    assert patch["entry_price"] == Decimal("50000")
    assert patch["current_price"] == Decimal("50100")
    assert patch["status"] == PositionStatus.OPEN
    assert patch["strategy_id"] == "7"
    assert patch["strategy_name"] == "Breakout"
    assert patch["opened_at"] == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    assert patch["stop_loss"] is None
    assert "close_reason" not in patch


def test_sparse_position_payload_only_carries_present_keys():
    assert position_patch({"id": 1, "currentPrice": 50200}) == {"current_price": Decimal("50200")}


def test_sell_and_sl_hit_status(position_payload):
    patch = position_patch(position_payload(type="Sell", status="SL_Hit"))
    assert patch["side"] == Side.SHORT
    assert patch["status"] == PositionStatus.CLOSED
    assert patch["close_reason"] == CloseReason.SL_HIT


def test_full_payload_fills_display_defaults(position_payload):
    payload = position_payload()
    del payload["currentPrice"]
    del payload["profit"]
    del payload["status"]

    patch = position_patch(payload, full=True)

    assert patch["current_price"] == Decimal("50000")
    assert patch["profit"] == Decimal("0")
    assert patch["status"] == PositionStatus.OPEN


def test_nested_strategy_and_timezone(position_payload):
    payload = position_payload(openTime="2026-01-05T12:00:00+02:00")
    del payload["strategyId"]
    del payload["strategyName"]
    payload["strategy"] = {"id": 9, "name": "Mean Revert"}

    patch = position_patch(payload)

    assert patch["strategy_id"] == "9"
    assert patch["strategy_name"] == "Mean Revert"
    assert patch["opened_at"] == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


def test_epoch_milliseconds_timestamp():
    patch = position_patch({"closeTime": 0})
    assert patch["closed_at"] == datetime(1970, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "payload",
    [
        {"currentPrice": "abc"},
        {"profit": True},
        {"type": "Hold"},
        {"status": "Pending"},
        {"openTime": "yesterday"},
        {"openPrice": "Infinity"},
    ],
)
def test_bad_position_values_raise(payload):
    with pytest.raises(MalformedEventError):
        position_patch(payload)


def test_subscription_payload(subscription_payload):
    patch = subscription_patch(subscription_payload(tradeMode="LIVE", isPaused="true"), full=True)

    assert patch == {
        "strategy_id": "7",
        "is_active": True,
        "is_paused": True,
        "trade_mode": TradeMode.LIVE,
        "lots": Decimal("1"),
        "name": "Breakout",
    }


def test_subscription_full_defaults():
    patch = subscription_patch({"id": 11, "strategyId": 7, "lots": 2}, full=True)
    assert patch["is_active"] is False
    assert patch["is_paused"] is False
    assert patch["trade_mode"] == TradeMode.PAPER


def test_bad_subscription_values_raise():
    with pytest.raises(MalformedEventError):
        subscription_patch({"isPaused": "maybe"})
    with pytest.raises(MalformedEventError):
        subscription_patch({"tradeMode": "demo"})


def test_closing_patch():
    patch = closing_patch({"close_price": Decimal("50500"), "realized_profit": Decimal("50")})

    assert patch["status"] == PositionStatus.CLOSED
    assert patch["close_reason"] == CloseReason.CLOSED
    assert patch["profit"] == Decimal("50")
    assert patch["closed_at"].tzinfo is not None

    overridden = closing_patch({"close_reason": CloseReason.SL_HIT}, CloseReason.TP_HIT)
    assert overridden["close_reason"] == CloseReason.TP_HIT


# ========== EVENTS ==========

def test_parse_envelope():
    event = parse_event({
        "entityKind": "Position",
        "changeType": "SlHit",
        "payload": {"id": 1},
        "sequence": "4",
    })
    assert event == PushEvent(EntityKind.POSITION, ChangeType.SL_HIT, {"id": 1}, 4)


@pytest.mark.parametrize(
    "raw",
    [
        {"entityKind": "Position", "changeType": "Exploded", "payload": {"id": 1}},
        {"entityKind": "Order", "changeType": "Opened", "payload": {"id": 1}},
        {"entityKind": "Strategy", "changeType": "TpHit", "payload": {"id": 1}},
        {"entityKind": "Position", "payload": {"id": 1}},
        {"entityKind": "Position", "changeType": "Opened", "payload": [1]},
        {"entityKind": "Position", "changeType": "Opened", "payload": {"id": 1}, "sequence": "x"},
    ],
)
def test_parse_envelope_rejects_malformed(raw):
    with pytest.raises(MalformedEventError):
        parse_event(raw)


def test_wire_position_update_actions():
    (event,) = wire_events("paper_position:update", {"action": "close", "position": {"id": 3}})
    assert event.entity_kind == EntityKind.POSITION
    assert event.change_type == ChangeType.CLOSED

    (event,) = wire_events("paper_position:update", {"type": "tp_hit", "position": {"id": 3}})
    assert event.change_type == ChangeType.TP_HIT


def test_wire_strategy_update_actions():
    (event,) = wire_events("strategy:update", {"action": "status_change", "strategy": {"id": 11}})
    assert event.entity_kind == EntityKind.STRATEGY
    assert event.change_type == ChangeType.MODIFIED

    (event,) = wire_events("strategy:update", {"action": "delete", "strategy": {"id": 11}})
    assert event.change_type == ChangeType.DELETED


def test_wire_mtm_batch_and_single_tick():
    events = wire_events("paper:mtm_update", {
        "positions": [
            {"id": 1, "currentPrice": 50200, "profit": 20, "profitPercent": 0.4},
            {"id": 2, "currentPrice": 3100, "profit": -5, "profitPercent": -0.1},
        ],
    })
    assert [e.payload["id"] for e in events] == [1, 2]
    assert all(e.change_type == ChangeType.MTM_UPDATE for e in events)

    (tick,) = wire_events("paper:mtm_update", {
        "positionId": 5,
        "symbol": "ETHUSD",
        "currentPrice": 3000,
        "timestamp": "2026-01-05T10:00:00Z",
    })
    assert tick.payload == {"id": 5, "currentPrice": 3000}


def test_wire_rejects_unknown():
    with pytest.raises(MalformedEventError):
        wire_events("wallet:update", {"balance": 1})
    with pytest.raises(MalformedEventError):
        wire_events("paper_position:update", {"action": "teleport", "position": {"id": 1}})
    with pytest.raises(MalformedEventError):
        wire_events("paper_position:update", {"action": "open"})
