"""
Fixed-point money helpers shared by cycles, adjustments and payments
"""
import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from ..config import config
from ..exceptions import InvalidValueError, InvariantViolationError

CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.000001")
BASE_CURRENCY = "USD"

_CURRENCY_CODE_RE = re.compile(r"^[A-Z]{3}$")


def to_decimal(value: Any, field: str = "amount") -> Optional[Decimal]:
    """Parse to Decimal without going through binary floats; None passes through"""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidValueError(f"{field} must be numeric", {"field": field})
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidValueError(f"{field} must be numeric (got {value!r})", {"field": field})
    if not result.is_finite():
        raise InvalidValueError(f"{field} must be finite", {"field": field})
    return result


def round_currency(amount: Decimal) -> Decimal:
    """Round to cents, half up"""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def round_rate(rate: Decimal) -> Decimal:
    return Decimal(rate).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


def to_local(amount_usd: Decimal, exchange_rate: Decimal) -> Decimal:
    return round_currency(Decimal(amount_usd) * Decimal(exchange_rate))


def amounts_consistent(
    amount_usd: Decimal,
    amount_local: Decimal,
    exchange_rate: Decimal,
    tolerance: Optional[Decimal] = None,
) -> bool:
    """True when |usd x rate - local| <= tolerance"""
    tolerance = config.AMOUNT_TOLERANCE if tolerance is None else tolerance
    return abs(Decimal(amount_usd) * Decimal(exchange_rate) - Decimal(amount_local)) <= tolerance


def ensure_consistent(
    amount_usd: Decimal,
    amount_local: Decimal,
    exchange_rate: Decimal,
    field: str,
) -> None:
    if not amounts_consistent(amount_usd, amount_local, exchange_rate):
        expected = to_local(amount_usd, exchange_rate)
        raise InvariantViolationError(
            f"{field}: local amount {amount_local} does not match "
            f"{amount_usd} x {exchange_rate} (expected {expected})",
            {"field": field, "expected": str(expected), "actual": str(amount_local)},
        )


def normalize_currency_code(code: Any) -> str:
    """Upper-case and check the ISO 4217 shape"""
    if not isinstance(code, str) or not _CURRENCY_CODE_RE.match(code.strip().upper()):
        raise InvalidValueError(f"Invalid currency code: {code!r}", {"field": "currency_code"})
    return code.strip().upper()


def ensure_base_currency_rate(currency_code: str, exchange_rate: Decimal) -> None:
    """USD amounts are not converted, so the rate must be exactly 1"""
    if currency_code == BASE_CURRENCY and Decimal(exchange_rate) != Decimal("1"):
        raise InvariantViolationError(
            f"Exchange rate must be 1 for {BASE_CURRENCY} (got {exchange_rate})",
            {"field": "exchange_rate_used"},
        )
