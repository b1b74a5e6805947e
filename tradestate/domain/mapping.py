"""
Wire payload → typed store patch conversion.

Snapshot responses, push events and mutation responses all carry the
server's camelCase JSON shapes (PaperPosition, StrategySubscription).
These helpers turn them into snake_case patches with Decimal/enum/datetime
values that the store can apply field-by-field.

Sparse by default: only keys present in the payload end up in the patch.
With full=True, display defaults the server omits are filled in the same
way the app screens did (current price falls back to open price, missing
flags are false, trade mode defaults to paper).
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from tradestate.domain.models import (
    CloseReason,
    EntityKind,
    PositionStatus,
    Side,
    TradeMode,
)
from tradestate.exceptions import MalformedEventError

# patch field -> accepted payload keys, first match wins
_POSITION_KEYS: Dict[str, Tuple[str, ...]] = {
    "symbol": ("symbol",),
    "market": ("market",),
    "volume": ("volume", "qty", "quantity"),
    "entry_price": ("openPrice", "entryPrice", "entry_price", "open_price"),
    "current_price": ("currentPrice", "current_price", "ltp"),
    "stop_loss": ("stopLoss", "stop_loss"),
    "take_profit": ("takeProfit", "take_profit"),
    "profit": ("profit", "mtm"),
    "profit_percent": ("profitPercent", "profit_percent"),
    "close_price": ("closePrice", "close_price", "exitPrice", "exit_price"),
    "realized_profit": ("realizedProfit", "realized_profit"),
    "opened_at": ("openTime", "openedAt", "opened_at", "createdAt"),
    "closed_at": ("closeTime", "closedAt", "closed_at"),
    "strategy_name": ("strategyName", "strategy_name"),
}

_POSITION_DECIMALS = (
    "volume", "entry_price", "current_price", "stop_loss", "take_profit",
    "profit", "profit_percent", "close_price", "realized_profit",
)

_STATUS_MAP = {
    "open": (PositionStatus.OPEN, None),
    "closed": (PositionStatus.CLOSED, CloseReason.CLOSED),
    "sl_hit": (PositionStatus.CLOSED, CloseReason.SL_HIT),
    "tp_hit": (PositionStatus.CLOSED, CloseReason.TP_HIT),
}


def payload_id(payload: Mapping[str, Any]) -> Optional[str]:
    """Server id of a payload as a string, or None."""
    raw = payload.get("id")
    if raw is None or raw == "":
        return None
    return str(raw)


def to_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    """Convert a wire number to Decimal. None stays None."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedEventError(f"{field_name}: expected number, got bool")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MalformedEventError(f"{field_name}: not a number: {value!r}") from e
    if not result.is_finite():
        raise MalformedEventError(f"{field_name}: not finite: {value!r}")
    return result


def to_datetime(value: Any, field_name: str) -> Optional[datetime]:
    """Parse ISO-8601 strings or epoch milliseconds into UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise MalformedEventError(f"{field_name}: bad timestamp {value!r}") from e
    else:
        raise MalformedEventError(f"{field_name}: bad timestamp {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_side(value: Any) -> Side:
    text = str(value).strip().lower()
    if text in ("buy", "long"):
        return Side.LONG
    if text in ("sell", "short"):
        return Side.SHORT
    raise MalformedEventError(f"side: unknown value {value!r}")


def to_trade_mode(value: Any) -> TradeMode:
    try:
        return TradeMode(str(value).strip().lower())
    except ValueError as e:
        raise MalformedEventError(f"trade_mode: unknown value {value!r}") from e


def to_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    raise MalformedEventError(f"{field_name}: expected boolean, got {value!r}")


def _first(payload: Mapping[str, Any], keys: Tuple[str, ...]) -> Tuple[bool, Any]:
    for key in keys:
        if key in payload:
            return True, payload[key]
    return False, None


def _nested_strategy(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    nested = payload.get("strategy")
    return nested if isinstance(nested, Mapping) else {}


def position_patch(payload: Mapping[str, Any], *, full: bool = False) -> Dict[str, Any]:
    """
    Build a Position patch from a PaperPosition-shaped payload.

    Raises MalformedEventError on values that cannot be interpreted.
    """
    if not isinstance(payload, Mapping):
        raise MalformedEventError(f"position payload must be an object, got {type(payload).__name__}")

    patch: Dict[str, Any] = {}
    for name, keys in _POSITION_KEYS.items():
        found, value = _first(payload, keys)
        if found:
            patch[name] = value

    for name in _POSITION_DECIMALS:
        if name in patch:
            patch[name] = to_decimal(patch[name], name)
    for name in ("opened_at", "closed_at"):
        if name in patch:
            patch[name] = to_datetime(patch[name], name)

    found, side = _first(payload, ("type", "side"))
    if found:
        patch["side"] = to_side(side)

    nested = _nested_strategy(payload)
    found, strategy_id = _first(payload, ("strategyId", "strategy_id"))
    if not found and "id" in nested:
        found, strategy_id = True, nested["id"]
    if found:
        patch["strategy_id"] = None if strategy_id is None else str(strategy_id)
    if "strategy_name" not in patch and "name" in nested:
        patch["strategy_name"] = nested["name"]

    if "status" in payload:
        key = str(payload["status"]).strip().lower()
        if key not in _STATUS_MAP:
            raise MalformedEventError(f"status: unknown value {payload['status']!r}")
        status, reason = _STATUS_MAP[key]
        patch["status"] = status
        if reason is not None and "close_reason" not in payload:
            patch["close_reason"] = reason
    if "close_reason" in payload or "closeReason" in payload:
        raw_reason = payload.get("close_reason", payload.get("closeReason"))
        try:
            patch["close_reason"] = None if raw_reason is None else CloseReason(str(raw_reason).lower())
        except ValueError as e:
            raise MalformedEventError(f"close_reason: unknown value {raw_reason!r}") from e

    if full:
        if patch.get("current_price") is None and patch.get("entry_price") is not None:
            patch["current_price"] = patch["entry_price"]
        if patch.get("profit") is None:
            patch["profit"] = Decimal("0")
        patch.setdefault("status", PositionStatus.OPEN)
        # None would satisfy the required-field check; drop it instead
        for name in ("symbol", "volume", "entry_price", "opened_at"):
            if name in patch and patch[name] is None:
                del patch[name]

    return patch


def subscription_patch(payload: Mapping[str, Any], *, full: bool = False) -> Dict[str, Any]:
    """Build a StrategySubscription patch from a subscription payload."""
    if not isinstance(payload, Mapping):
        raise MalformedEventError(f"subscription payload must be an object, got {type(payload).__name__}")

    patch: Dict[str, Any] = {}
    nested = _nested_strategy(payload)

    found, strategy_id = _first(payload, ("strategyId", "strategy_id"))
    if not found and "id" in nested:
        found, strategy_id = True, nested["id"]
    if found and strategy_id is not None:
        patch["strategy_id"] = str(strategy_id)

    for name, keys in (("is_active", ("isActive", "is_active")), ("is_paused", ("isPaused", "is_paused"))):
        found, value = _first(payload, keys)
        if found and value is not None:
            patch[name] = to_bool(value, name)

    found, mode = _first(payload, ("tradeMode", "trade_mode"))
    if found and mode is not None:
        patch["trade_mode"] = to_trade_mode(mode)

    found, lots = _first(payload, ("lots",))
    if found and lots is not None:
        patch["lots"] = to_decimal(lots, "lots")

    found, name = _first(payload, ("name", "strategyName"))
    if not found and "name" in nested:
        found, name = True, nested["name"]
    if found:
        patch["name"] = name

    if full:
        patch.setdefault("is_active", False)
        patch.setdefault("is_paused", False)
        patch.setdefault("trade_mode", TradeMode.PAPER)

    return patch


def patch_for(kind: EntityKind, payload: Mapping[str, Any], *, full: bool = False) -> Dict[str, Any]:
    if kind == EntityKind.POSITION:
        return position_patch(payload, full=full)
    return subscription_patch(payload, full=full)


def closing_patch(patch: Mapping[str, Any], reason: Optional[CloseReason] = None) -> Dict[str, Any]:
    """
    Turn a position patch into a close transition.

    reason overrides whatever the payload said; without one the payload's
    reason is kept, defaulting to a plain close. closed_at falls back to
    now, and profit takes the realized profit when the payload has one.
    """
    out = dict(patch)
    out["status"] = PositionStatus.CLOSED
    out["close_reason"] = reason or out.get("close_reason") or CloseReason.CLOSED
    if out.get("closed_at") is None:
        out["closed_at"] = datetime.now(timezone.utc)
    if out.get("realized_profit") is not None:
        out["profit"] = out["realized_profit"]
    return out
