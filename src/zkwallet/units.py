"""Exact amount conversions between native, token and shielded units.

Three representations are involved:
- base units ("wei"): integer token units on the base chain
- shielded units ("Gwei-like"): integer units tracked inside the pool
- human strings: decimal token amounts such as "12.5"

Conversions never touch floating point.
"""

from decimal import Decimal, InvalidOperation, localcontext

from zkwallet.config import NetworkConfig

HUMAN_PREFIX = "^"


def to_base_units(amount: str, decimals: int) -> int:
    """Convert a human decimal string to integer base units.

    Raises:
        ValueError: If the string is not a number, negative, or has more
            fractional digits than ``decimals``
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")

    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    if value < 0:
        raise ValueError(f"Amount cannot be negative: {amount!r}")

    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(value.as_tuple().digits) + decimals + 2)
        scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount!r} has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(amount: int, decimals: int) -> str:
    """Format integer base units as a human decimal string."""
    sign = "-" if amount < 0 else ""
    amount = abs(int(amount))
    divisor = 10 ** decimals
    whole = amount // divisor
    fraction = amount % divisor

    if fraction == 0:
        return f"{sign}{whole}"

    fraction_str = str(fraction).zfill(decimals).rstrip("0")
    return f"{sign}{whole}.{fraction_str}"


class AmountConverter:
    """Unit conversions for one network configuration.

    Example:
        >>> conv = AmountConverter(config)       # 18 token decimals, 9 shielded
        >>> conv.human_to_shielded("1.5")
        1500000000
    """

    def __init__(self, config: NetworkConfig):
        self.token_decimals = config.token_decimals
        self.shielded_decimals = config.shielded_decimals
        self.native_decimals = config.native_decimals
        self.denominator = config.denominator

    # wei -> shielded (truncates dust below one shielded unit)
    def wei_to_shielded(self, amount_wei: int) -> int:
        return int(amount_wei) // self.denominator

    # shielded -> wei
    def shielded_to_wei(self, amount_shielded: int) -> int:
        return int(amount_shielded) * self.denominator

    def human_to_wei(self, amount: str) -> int:
        return to_base_units(amount, self.token_decimals)

    def wei_to_human(self, amount_wei: int) -> str:
        return from_base_units(amount_wei, self.token_decimals)

    def human_to_shielded(self, amount: str) -> int:
        return to_base_units(amount, self.shielded_decimals)

    def shielded_to_human(self, amount_shielded: int) -> str:
        return from_base_units(amount_shielded, self.shielded_decimals)

    def human_to_native(self, amount: str) -> int:
        return to_base_units(amount, self.native_decimals)

    def native_to_human(self, amount: int) -> str:
        return from_base_units(amount, self.native_decimals)

    def parse_amount(self, amount: str) -> int:
        """Parse a user amount into shielded units.

        ``^1.5`` means 1.5 tokens; a bare integer is taken as base units
        and truncated to shielded precision.
        """
        amount = amount.strip()
        if amount.startswith(HUMAN_PREFIX):
            return self.human_to_shielded(amount[len(HUMAN_PREFIX):])
        if not amount.isdigit():
            raise ValueError(f"Base unit amounts must be integers: {amount!r}")
        return self.wei_to_shielded(int(amount))
