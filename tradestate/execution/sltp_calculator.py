"""
Stop-loss / take-profit trigger price calculation.

Converts what the user typed (a distance in points, a percentage, or an
absolute price) into an absolute trigger price relative to the entry.

Two side conventions exist:

- SIDE_AWARE: a short position's stop sits above entry and its target
  below, mirroring the long formulas.
- LONG_ONLY: long formulas for both sides. This is what the mobile app
  has always submitted, kept for parity with existing positions.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Tuple

from tradestate.domain.models import Side
from tradestate.exceptions import ValidationFailure
from tradestate.monitoring.logger import get_logger

logger = get_logger(__name__)


class StopKind(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class PriceUnit(str, Enum):
    POINTS = "points"
    PERCENTAGE = "percentage"
    PRICE = "price"


class SideConvention(str, Enum):
    SIDE_AWARE = "side_aware"
    LONG_ONLY = "long_only"


def parse_magnitude(value: Any, label: str = "magnitude") -> Decimal:
    """
    Parse user input into a non-negative finite Decimal.

    Raises ValidationFailure for anything else.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationFailure(f"{label} must be numeric, got {value!r}")
    text = value.strip() if isinstance(value, str) else str(value)
    if not text:
        raise ValidationFailure(f"{label} is empty")
    try:
        magnitude = Decimal(text)
    except (InvalidOperation, ValueError):
        raise ValidationFailure(f"{label} must be numeric, got {value!r}")
    if not magnitude.is_finite():
        raise ValidationFailure(f"{label} must be finite, got {value!r}")
    if magnitude < 0:
        raise ValidationFailure(f"{label} must not be negative, got {value!r}")
    return magnitude


def compute(
    entry_price: Decimal,
    side: Side,
    kind: StopKind,
    unit: PriceUnit,
    magnitude: Any,
    convention: SideConvention = SideConvention.SIDE_AWARE,
) -> Decimal:
    """
    Absolute trigger price for one stop.

    Args:
        entry_price: Position entry price
        side: Position side
        kind: STOP_LOSS or TAKE_PROFIT
        unit: How magnitude is expressed
        magnitude: User input (str, int, float or Decimal)
        convention: Short-side handling

    Returns:
        Trigger price as Decimal

    Raises:
        ValidationFailure: on bad magnitude or a non-positive result
    """
    entry = Decimal(str(entry_price))
    if not entry.is_finite() or entry <= 0:
        raise ValidationFailure(f"entry price must be positive, got {entry_price!r}")
    m = parse_magnitude(magnitude, kind.value)

    if unit == PriceUnit.PRICE:
        trigger = m
    else:
        # +1 moves the trigger above entry, -1 below
        direction = Decimal("-1") if kind == StopKind.STOP_LOSS else Decimal("1")
        if side == Side.SHORT and convention == SideConvention.SIDE_AWARE:
            direction = -direction
        if unit == PriceUnit.POINTS:
            trigger = entry + direction * m
        else:
            trigger = entry * (Decimal("1") + direction * m / Decimal("100"))

    if trigger <= 0:
        raise ValidationFailure(
            f"{kind.value} trigger must be positive, got {trigger} "
            f"(entry={entry}, {unit.value}={m})"
        )
    return trigger


@dataclass(frozen=True)
class SlTpInput:
    """One user-entered stop: how it is expressed and by how much."""
    unit: PriceUnit
    magnitude: Any

    @classmethod
    def parse(cls, unit: Any, magnitude: Any) -> "SlTpInput":
        try:
            parsed_unit = PriceUnit(str(unit).strip().lower())
        except ValueError:
            raise ValidationFailure(f"unknown unit {unit!r}")
        return cls(unit=parsed_unit, magnitude=magnitude)


def compute_protection(
    entry_price: Decimal,
    side: Side,
    stop_loss: Optional[SlTpInput] = None,
    take_profit: Optional[SlTpInput] = None,
    convention: SideConvention = SideConvention.SIDE_AWARE,
) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """
    Compute a stop/target pair. Either side may be omitted.

    Raises ValidationFailure when both are omitted.
    """
    if stop_loss is None and take_profit is None:
        raise ValidationFailure("nothing to submit: stop loss and take profit both empty")

    sl = None
    tp = None
    if stop_loss is not None:
        sl = compute(entry_price, side, StopKind.STOP_LOSS, stop_loss.unit, stop_loss.magnitude, convention)
    if take_profit is not None:
        tp = compute(entry_price, side, StopKind.TAKE_PROFIT, take_profit.unit, take_profit.magnitude, convention)

    logger.debug(
        "SLTP_COMPUTED",
        entry_price=str(entry_price),
        side=side.value,
        convention=convention.value,
        stop_loss=str(sl) if sl is not None else None,
        take_profit=str(tp) if tp is not None else None,
    )
    return sl, tp
