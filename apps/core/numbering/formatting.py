"""
Receipt number formatting.

Pure functions only: nothing here reads or writes counters or settings rows.
Supported styles:
- sequential / student-sequential: 42
- year: 42/2024
- short-year: 42/24
- custom: <prefix>42
- auto: <prefix><timestamp digits> (not guaranteed unique)
"""

import re
import time

from django.utils import timezone


DOMAIN_FEE = 'fee'
DOMAIN_INSTALLMENT = 'installment'
DOMAIN_CHOICES = (
    (DOMAIN_FEE, 'Fee'),
    (DOMAIN_INSTALLMENT, 'Installment'),
)
DOMAINS = frozenset(value for value, _ in DOMAIN_CHOICES)

FORMAT_SEQUENTIAL = 'sequential'
FORMAT_YEAR = 'year'
FORMAT_SHORT_YEAR = 'short-year'
FORMAT_CUSTOM = 'custom'
FORMAT_STUDENT_SEQUENTIAL = 'student-sequential'
FORMAT_AUTO = 'auto'
FORMAT_CHOICES = (
    (FORMAT_AUTO, 'Automatic (timestamp)'),
    (FORMAT_SEQUENTIAL, 'Sequential'),
    (FORMAT_YEAR, 'Number / year'),
    (FORMAT_SHORT_YEAR, 'Number / short year'),
    (FORMAT_CUSTOM, 'Prefix + number'),
    (FORMAT_STUDENT_SEQUENTIAL, 'Sequential (per student)'),
)

# Formats whose numbers come from the counter. Anything else falls back to
# the timestamp style.
SEQUENCED_FORMATS = frozenset({
    FORMAT_SEQUENTIAL,
    FORMAT_YEAR,
    FORMAT_SHORT_YEAR,
    FORMAT_CUSTOM,
    FORMAT_STUDENT_SEQUENTIAL,
})

DEFAULT_PREFIXES = {
    DOMAIN_FEE: 'R-',
    DOMAIN_INSTALLMENT: '',
}

TIMESTAMP_DIGITS = 10


def is_sequenced(fmt):
    return fmt in SEQUENCED_FORMATS


def _resolve_year(year):
    return int(year) if year else timezone.now().year


def timestamp_receipt_number(*, domain, prefix='', offset=0, clock=None):
    """Build an ``auto`` style number from the microsecond clock.

    ``offset`` separates numbers generated from the same clock reading.
    """
    clock = clock or time.time_ns
    micros = clock() // 1000 + offset
    prefix_to_use = prefix or DEFAULT_PREFIXES.get(domain, '')
    return f"{prefix_to_use}{str(micros)[-TIMESTAMP_DIGITS:]}"


def format_receipt_number(value, *, fmt, prefix='', year=None, domain=DOMAIN_FEE, offset=0, clock=None):
    value = int(value)

    if fmt in (FORMAT_SEQUENTIAL, FORMAT_STUDENT_SEQUENTIAL):
        return str(value)
    if fmt == FORMAT_YEAR:
        return f"{value}/{_resolve_year(year)}"
    if fmt == FORMAT_SHORT_YEAR:
        return f"{value}/{str(_resolve_year(year))[-2:]}"
    if fmt == FORMAT_CUSTOM:
        return f"{prefix or ''}{value}"

    return timestamp_receipt_number(domain=domain, prefix=prefix, offset=offset, clock=clock)


def format_batch(first_value, count, *, fmt, prefix='', year=None, domain=DOMAIN_FEE, clock=None):
    if not is_sequenced(fmt):
        # One clock reading for the whole batch keeps the offsets contiguous.
        reading = (clock or time.time_ns)()

        def clock():
            return reading

    return [
        format_receipt_number(
            first_value + index,
            fmt=fmt,
            prefix=prefix,
            year=year,
            domain=domain,
            offset=index,
            clock=clock,
        )
        for index in range(count)
    ]


_PATTERNS = {
    FORMAT_SEQUENTIAL: re.compile(r'^\d+$'),
    FORMAT_STUDENT_SEQUENTIAL: re.compile(r'^\d+$'),
    FORMAT_YEAR: re.compile(r'^\d+/\d{4}$'),
    FORMAT_SHORT_YEAR: re.compile(r'^\d+/\d{2}$'),
}


def validate_receipt_number(receipt_number, *, fmt, prefix=''):
    """Return True when ``receipt_number`` looks like a number of style ``fmt``."""
    if not receipt_number:
        return False

    pattern = _PATTERNS.get(fmt)
    if pattern is not None:
        return bool(pattern.match(receipt_number))
    if fmt == FORMAT_CUSTOM:
        return receipt_number.startswith(prefix) if prefix else True
    return len(receipt_number.strip()) > 0
