"""
Impact calculation and registration tier rules.

Both functions are pure so every payment mode, the manual admin path and
tests share exactly one formula.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from impact_settlement.core.exceptions import ConfigError
from impact_settlement.database.models import RegistrationLevel

Number = Union[Decimal, int, float, str]

GRAMS_PER_KG = Decimal(1000)


def _to_decimal(value: Number) -> Decimal:
    # str() first so floats like 0.11 don't carry binary noise
    return value if isinstance(value, Decimal) else Decimal(str(value))


def calculate_impact_grams(amount: Number, csr_price: Number, multiplier: Number) -> int:
    """
    Convert a euro amount into grams of plastic removed.

    ``grams = round_half_up(amount / csr_price * multiplier * 1000)``

    Args:
        amount: Transaction amount in euros (>= 0)
        csr_price: Current price per kilogram of removal
        multiplier: SKU impact multiplier

    Raises:
        ConfigError: If csr_price or multiplier is not positive
    """
    amount = _to_decimal(amount)
    csr_price = _to_decimal(csr_price)
    multiplier = _to_decimal(multiplier)

    if csr_price <= 0:
        raise ConfigError("CSR price must be greater than zero", csr_price=str(csr_price))
    if multiplier <= 0:
        raise ConfigError(
            "Impact multiplier must be greater than zero", multiplier=str(multiplier)
        )

    grams = (amount / csr_price) * multiplier * GRAMS_PER_KG
    return int(grams.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def determine_registration_level(amount: Number, threshold: Number) -> RegistrationLevel:
    """Tier a purchase of ``amount`` requires, given the certification threshold."""
    amount = _to_decimal(amount)
    if amount >= _to_decimal(threshold):
        return RegistrationLevel.FULL
    if amount > 0:
        return RegistrationLevel.STANDARD
    return RegistrationLevel.MINIMAL


def is_certificate_eligible(amount: Number, threshold: Number) -> bool:
    return _to_decimal(amount) >= _to_decimal(threshold)
