from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Union

from .errors import InvalidAmount

AmountLike = Union[Decimal, int, str]


@dataclass(frozen=True)
class MoneyContext:
    """Decimal arithmetic settings for every monetary value.

    Passed explicitly to the services that touch amounts, so nothing
    depends on the process-wide decimal context.
    """

    scale: int = 2
    precision: int = 28
    rounding: str = ROUND_HALF_UP
    _context: Context = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_context", Context(prec=self.precision, rounding=self.rounding))

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.scale)

    @property
    def zero(self) -> Decimal:
        return self.quantize(Decimal(0))

    def quantize(self, value: Decimal) -> Decimal:
        try:
            return value.quantize(self.quantum, rounding=self.rounding, context=self._context)
        except InvalidOperation as exc:
            # more digits than the configured precision can hold at this scale
            raise InvalidAmount(f"Amount {value} is out of range") from exc

    def parse(self, value: AmountLike) -> Decimal:
        # floats are rejected outright; their binary error would leak into the ledger
        if isinstance(value, float) or isinstance(value, bool):
            raise InvalidAmount(f"Amount must be a decimal string or integer, got {value!r}")
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(f"Invalid amount format: {value!r}") from exc
        if not amount.is_finite():
            raise InvalidAmount(f"Invalid amount format: {value!r}")
        return self.quantize(amount)

    def positive(self, value: AmountLike) -> Decimal:
        amount = self.parse(value)
        if amount <= 0:
            raise InvalidAmount("Amount must be positive")
        return amount

    def add(self, left: Decimal, right: Decimal) -> Decimal:
        return self.quantize(self._context.add(left, right))

    def subtract(self, left: Decimal, right: Decimal) -> Decimal:
        return self.quantize(self._context.subtract(left, right))

    @classmethod
    def from_settings(cls, settings) -> "MoneyContext":
        return cls(scale=settings.money_scale, precision=settings.money_precision)
