from decimal import Decimal, ROUND_HALF_UP


ZERO = Decimal('0.00')
CENT = Decimal('0.01')

# Accumulated totals are compared with this tolerance; balances themselves
# are clamped, never rounded towards zero.
MONEY_EPSILON = Decimal('0.01')


def to_decimal(value) -> Decimal:
    return Decimal(str(value or '0'))


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative(value) -> Decimal:
    value = quantize(value)
    return value if value > 0 else ZERO


def amounts_match(left, right) -> bool:
    return abs(quantize(left) - quantize(right)) <= MONEY_EPSILON
