"""Parsing of human-written byte sizes such as ``300``, ``5KB`` or ``2GiB``."""

import re
import struct
from dataclasses import dataclass
from itertools import groupby
from types import MappingProxyType

_UNSIGNED = re.compile(r"\+?[0-9]+")

# Largest value of the native unsigned word
WORD_MAX = 2 ** (struct.calcsize("P") * 8) - 1


@dataclass(slots=True, frozen=True)
class UnitSpec:
    """Multiplier of a unit token, ``base ** power``."""

    prefix: str
    base: int
    power: int


def _build_unit_table() -> MappingProxyType:
    table = {"B": UnitSpec("B", 1, 1)}
    for power, letter in enumerate("KMGTPEZYRQ", start=1):
        for prefix, base in ((letter, 1000), (letter + "i", 1024)):
            table[prefix] = UnitSpec(prefix, base, power)
            table[prefix + "B"] = UnitSpec(prefix + "B", base, power)
    return MappingProxyType(table)


UNIT_TABLE = _build_unit_table()


class ByteSizeError(ValueError):
    """Base class for byte size parse failures."""

    def _fields(self) -> tuple:
        return ()

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._fields() == other._fields()

    def __hash__(self) -> int:
        return hash((type(self), self._fields()))


class EmptyError(ByteSizeError):
    def __init__(self) -> None:
        super().__init__("cannot parse empty string")


class AlphaBeforeAmountError(ByteSizeError):
    def __init__(self) -> None:
        super().__init__("unexpected alphabetic character before amount")


class InvalidAmountError(ByteSizeError):
    """The leading amount is not an unsigned integer of the target width."""

    def __init__(self, text: str, reason: str) -> None:
        super().__init__(reason)
        self.text = text
        self.reason = reason

    def _fields(self) -> tuple:
        return (self.text, self.reason)


class UnknownUnitPrefixError(ByteSizeError):
    def __init__(self, unit: str) -> None:
        super().__init__(f"unknown prefix '{unit}'")
        self.unit = unit

    def _fields(self) -> tuple:
        return (self.unit,)


class UnitOverflowError(ByteSizeError):
    """The unit multiplier alone does not fit the target width."""

    def __init__(self, unit: str) -> None:
        super().__init__(f"specified unit '{unit}' too big for current architecture")
        self.unit = unit

    def _fields(self) -> tuple:
        return (self.unit,)


class AmountOverflowError(ByteSizeError):
    """``amount * multiplier`` does not fit the target width."""

    def __init__(self, amount: int, unit: str) -> None:
        super().__init__(f"amount '{amount}{unit}' too big for current architecture")
        self.amount = amount
        self.unit = unit

    def _fields(self) -> tuple:
        return (self.amount, self.unit)


class TrailingGarbageError(ByteSizeError):
    def __init__(self, rest: str) -> None:
        super().__init__(f"unexpected string '{rest}' after unit")
        self.rest = rest

    def _fields(self) -> tuple:
        return (self.rest,)


def _parse_amount(text: str, max_value: int) -> int:
    if not text:
        raise InvalidAmountError(text, "cannot parse integer from empty string")
    if not _UNSIGNED.fullmatch(text):
        raise InvalidAmountError(text, "invalid digit found in string")
    amount = int(text)
    if amount > max_value:
        raise InvalidAmountError(text, "number too large to fit in target type")
    return amount


def _checked_pow(base: int, power: int, max_value: int) -> int | None:
    result = 1
    for _ in range(power):
        result *= base
        if result > max_value:
            return None
    return result


def parse_byte_amount(text: str, *, max_value: int = WORD_MAX) -> int:
    """
    Parse a byte size into an exact number of bytes.

    The input is an unsigned amount optionally followed by a unit token from
    UNIT_TABLE (case-sensitive, exact match). Decimal units scale by powers
    of 1000, ``i`` units by powers of 1024.

    Args:
        text: The size, e.g. ``"300"``, ``"300KB"`` or ``"300KiB"``.
        max_value: Largest representable value. Overflow of the amount, the
            unit multiplier or their product is reported separately.

    Raises:
        ByteSizeError: One of its subclasses, describing the failure.
    """
    runs = [(is_alpha, "".join(chars)) for is_alpha, chars in groupby(text.strip(), key=str.isalpha)]
    if not runs:
        raise EmptyError()

    is_alpha, amount_text = runs[0]
    if is_alpha:
        raise AlphaBeforeAmountError()
    amount = _parse_amount(amount_text, max_value)

    if len(runs) == 1:
        return amount

    # runs alternate, so the second one is always alphabetic
    unit = runs[1][1]
    spec = UNIT_TABLE.get(unit)
    if spec is None:
        raise UnknownUnitPrefixError(unit)

    multiplier = _checked_pow(spec.base, spec.power, max_value)
    if multiplier is None:
        raise UnitOverflowError(unit)

    total = amount * multiplier
    if total > max_value:
        raise AmountOverflowError(amount, unit)

    rest = "".join(run for _, run in runs[2:])
    if rest:
        raise TrailingGarbageError(rest)
    return total
