"""
raidledger.engine.points — Point Amount Value Object
=====================================================

All point values that enter the system (manual adjustments, overrides,
quota thresholds, moderation values) are parsed here, once.  Points are
money-like: stored as ``NUMERIC(10, 2)`` and handled as :class:`Decimal`
so that ``0.1 + 0.2`` is exactly ``0.3``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from raidledger.errors import ValidationError

__all__ = ["PointAmount", "quantize_points", "ZERO", "MAX_POINTS"]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# NUMERIC(10, 2) holds at most 8 integer digits.
MAX_POINTS = Decimal("99999999.99")


def quantize_points(value: Decimal | int | float | str) -> Decimal:
    """Normalize an already-trusted value (e.g. a DB aggregate) to 2 places."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT)


@dataclass(frozen=True, slots=True)
class PointAmount:
    """A validated point amount with at most two decimal places.

    Use :meth:`parse` to build one from untrusted input::

        PointAmount.parse("2.5").value               # Decimal("2.50")
        PointAmount.parse(-3, signed=True).value     # Decimal("-3.00")
        PointAmount.parse(-3)                        # ValidationError
        PointAmount.parse("1.005")                   # ValidationError
    """

    value: Decimal

    @classmethod
    def parse(
        cls,
        raw: Decimal | int | float | str,
        *,
        field: str = "amount",
        signed: bool = False,
    ) -> PointAmount:
        if raw is None or isinstance(raw, bool):
            raise ValidationError(
                f"{field} must be a number", fields={field: "not a number"}
            )
        try:
            value = raw if isinstance(raw, Decimal) else Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(
                f"{field} must be a number", fields={field: "not a number"}
            ) from None

        if not value.is_finite():
            raise ValidationError(
                f"{field} must be a finite number", fields={field: "not finite"}
            )
        if value != value.quantize(CENT):
            raise ValidationError(
                f"{field} can have at most 2 decimal places",
                fields={field: "too many decimal places"},
            )
        if not signed and value < 0:
            raise ValidationError(
                f"{field} must be non-negative", fields={field: "negative"}
            )
        if abs(value) > MAX_POINTS:
            raise ValidationError(
                f"{field} is out of range", fields={field: "out of range"}
            )
        return cls(value.quantize(CENT))

    def __float__(self) -> float:
        return float(self.value)

    def __str__(self) -> str:
        return str(self.value)
