"""
Lot-size aware rounding.

Precision always comes from the exchange step string ("0.0010" -> 4 digits),
never from inspecting the value being rounded.

- floor_to_step: selling / reducing. Result never exceeds the holding.
- ceil_to_step:  buying to cover a target. Result is never below the target.
"""
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Union

StepLike = Union[str, Decimal]


def step_precision(step: StepLike) -> int:
    """Number of fractional digits in the step string."""
    exponent = Decimal(str(step)).as_tuple().exponent
    return max(0, -int(exponent))


def _round_to_step(value: Decimal, step: StepLike, rounding: str) -> Decimal:
    step_dec = Decimal(str(step))
    if step_dec <= 0:
        raise ValueError(f"Step must be positive, got {step!r}")
    value = Decimal(str(value))
    multiples = (value / step_dec).to_integral_value(rounding=rounding)
    quantum = Decimal(1).scaleb(-step_precision(step))
    return (multiples * step_dec).quantize(quantum)


def floor_to_step(value: Decimal, step: StepLike) -> Decimal:
    """Largest multiple of ``step`` that is <= ``value``."""
    return _round_to_step(value, step, ROUND_FLOOR)


def ceil_to_step(value: Decimal, step: StepLike) -> Decimal:
    """Smallest multiple of ``step`` that is >= ``value``."""
    return _round_to_step(value, step, ROUND_CEILING)


def to_order_size(value: Decimal) -> str:
    """Gateway text form, plain notation without exponent."""
    return format(value, "f")


def whole_contracts(base_amount: Decimal, ct_val: Decimal) -> Decimal:
    """Whole swap contracts covered by ``base_amount`` of the underlying."""
    if ct_val <= 0:
        raise ValueError(f"Contract value must be positive, got {ct_val}")
    return (base_amount / ct_val).to_integral_value(rounding=ROUND_FLOOR)
