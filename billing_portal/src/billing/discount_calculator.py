from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from types import MappingProxyType
from typing import Mapping, Union
import structlog

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

# Self-pay multipliers by service code. Read-only for the life of the process.
SELF_PAY_DISCOUNTS: Mapping[str, Decimal] = MappingProxyType({
    "office_visit": Decimal("0.65"),
    "lab_work": Decimal("0.50"),
    "imaging": Decimal("0.70"),
    "procedure": Decimal("0.65"),
    "consultation": Decimal("0.60"),
})

DEFAULT_DISCOUNT_MULTIPLIER = Decimal("0.65")

Amount = Union[Decimal, int, str]


def discount_multiplier_for(service_code: str) -> Decimal:
    multiplier = SELF_PAY_DISCOUNTS.get(service_code)
    if multiplier is None:
        logger.debug("No discount rule for service code, using default.", service_code=service_code)
        return DEFAULT_DISCOUNT_MULTIPLIER
    return multiplier


def _as_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, float):
        # Floats carry binary rounding error into money math.
        raise TypeError("Monetary amounts must be Decimal, int or str, not float.")
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid monetary amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid monetary amount: {amount!r}")
    return value


def calculate_discounted_amount(original_amount: Amount, service_code: str) -> Decimal:
    """
    Returns the self-pay price for a charge, rounded half-up to the cent.

    The result is never negative and never above `original_amount`, since
    every multiplier lies in (0, 1].

    Raises:
        ValueError: if `original_amount` is negative or not a number.
    """
    original = _as_decimal(original_amount)
    if original < 0:
        raise ValueError(f"Original amount cannot be negative: {original}")
    return (original * discount_multiplier_for(service_code)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Amount) -> int:
    """Dollars to integer cents, half-up."""
    return int((_as_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)
