"""
Fixed-point ledger units.

All NAV, share and USDC values are scaled integers. Each scale gets its own
type so a share count can never be multiplied by a USDC amount by accident:
values only combine with values of the same unit, and every cross-unit step
goes through one of the conversion functions below.

Scales:
    Nav     8 decimals  (100_000_000 == 1.00000000 USDC per share)
    Usdc    6 decimals  (1_000_000 == $1.00)
    Shares  6 decimals  (1_000_000 == 1 share)
"""

from dataclasses import dataclass
from typing import TypeVar, Union

NAV_DECIMALS = 8
NAV_BASE = 10**NAV_DECIMALS

USDC_DECIMALS = 6
USDC_SCALE = 10**USDC_DECIMALS

SHARE_DECIMALS = 6
SHARE_SCALE = 10**SHARE_DECIMALS

BPS_DENOMINATOR = 10_000
DAYS_PER_YEAR = 365

# Intermediate multiplier for daily fee division; keeps the fractional part
# of the first division around until the final floor.
PRECISION_MULTIPLIER = 1_000_000


@dataclass(frozen=True, order=True)
class _Fixed:
    raw: int

    def __post_init__(self):
        if isinstance(self.raw, bool) or not isinstance(self.raw, int):
            raise TypeError(f"{type(self).__name__} expects an int, got {self.raw!r}")

    def _same(self, other):
        if type(other) is not type(self):
            raise TypeError(
                f"Cannot combine {type(self).__name__} with {type(other).__name__}"
            )
        return other

    def __add__(self, other):
        return type(self)(self.raw + self._same(other).raw)

    def __sub__(self, other):
        return type(self)(self.raw - self._same(other).raw)

    def __bool__(self):
        return self.raw != 0

    def __int__(self):
        return self.raw

    def is_positive(self) -> bool:
        return self.raw > 0

    @classmethod
    def zero(cls):
        return cls(0)


class Nav(_Fixed):
    """NAV per share, 8 decimals."""


class Shares(_Fixed):
    """Pool shares, 6 decimals."""


class Usdc(_Fixed):
    """USDC amount, 6 decimals."""


F = TypeVar("F", Nav, Shares, Usdc)


def shares_to_usdc(shares: Shares, nav: Nav) -> Usdc:
    """Value of `shares` at `nav`, floored to the USDC base unit."""
    if not isinstance(shares, Shares) or not isinstance(nav, Nav):
        raise TypeError("shares_to_usdc expects (Shares, Nav)")
    return Usdc(shares.raw * nav.raw * USDC_SCALE // (NAV_BASE * SHARE_SCALE))


def usdc_to_shares(amount: Usdc, nav: Nav) -> Shares:
    """Shares purchasable with `amount` at `nav`, floored."""
    if not isinstance(amount, Usdc) or not isinstance(nav, Nav):
        raise TypeError("usdc_to_shares expects (Usdc, Nav)")
    if nav.raw <= 0:
        raise ValueError("NAV must be positive")
    return Shares(amount.raw * NAV_BASE * SHARE_SCALE // (nav.raw * USDC_SCALE))


def apply_bps(value: F, bps: int) -> F:
    """`value * bps / 10000`, floored, in the same unit."""
    if not isinstance(value, _Fixed):
        raise TypeError("apply_bps expects a fixed-point value")
    return type(value)(value.raw * int(bps) // BPS_DENOMINATOR)


def daily_management_fee(total_deposited: Usdc, fee_bps: int) -> Usdc:
    """
    One day of an annual management fee.

    fee = floor(total * bps * P / (10000 * 365) / P)
    """
    if not isinstance(total_deposited, Usdc):
        raise TypeError("daily_management_fee expects Usdc")
    if total_deposited.raw <= 0 or fee_bps <= 0:
        return Usdc(0)
    scaled = total_deposited.raw * int(fee_bps) * PRECISION_MULTIPLIER
    daily_scaled = scaled // (BPS_DENOMINATOR * DAYS_PER_YEAR)
    return Usdc(daily_scaled // PRECISION_MULTIPLIER)


# ---------------------------
# Display helpers
# ---------------------------


def _split(raw: int, decimals: int):
    sign = "-" if raw < 0 else ""
    raw = abs(raw)
    int_part, dec_part = divmod(raw, 10**decimals)
    return sign, int_part, str(dec_part).rjust(decimals, "0")


def format_usdc(amount: Union[Usdc, int]) -> str:
    """$105.00 style, truncated to cents."""
    raw = amount.raw if isinstance(amount, Usdc) else int(amount)
    sign, int_part, dec = _split(raw, USDC_DECIMALS)
    return f"{sign}${int_part}.{dec[:2]}"


def format_shares(shares: Union[Shares, int]) -> str:
    raw = shares.raw if isinstance(shares, Shares) else int(shares)
    sign, int_part, dec = _split(raw, SHARE_DECIMALS)
    return f"{sign}{int_part}.{dec[:4]}"


def format_nav(nav: Union[Nav, int]) -> str:
    raw = nav.raw if isinstance(nav, Nav) else int(nav)
    sign, int_part, dec = _split(raw, NAV_DECIMALS)
    return f"{sign}{int_part}.{dec}"
