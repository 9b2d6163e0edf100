"""
Signal: one validated trade decision point.

**Conceptual**: A strategy's output is a stream of signals. Each signal says
"buy to enter" or "sell to exit" an instrument at a price on a date. Two
special cases exist:
  - A *pending* signal has neither price nor date. It describes a decision
    that would execute on the next, not yet available bar.
  - A synthesized close for a still-open position carries price and date but
    is flagged pending, because it was never actually triggered.

Construction validates eagerly and fails closed: anything malformed raises
ValidationError("Required field missing: ...") before the object exists.
"""

import math
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Optional

import pandas as pd

from flipper_lab.data.schemas import Instrument, coerce_timestamp, is_datetime_like
from flipper_lab.utils.errors import ValidationError


class SignalAction(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"


class SignalType(str, Enum):
    """Whether the signal opens or closes a position."""
    ENTER = "enter"
    EXIT = "exit"


class SignalStatus(str, Enum):
    """EXECUTED for signals on real bars; PENDING for not-yet-executable ones."""
    EXECUTED = "executed"
    PENDING = "pending"


def _missing(detail: str) -> ValidationError:
    return ValidationError(f"Required field missing: {detail}")


def _parse_choice(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        raise _missing(f"{field_name} must be one of {[m.value for m in enum_cls]}, got {value!r}")
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        raise _missing(f"{field_name} must be one of {[m.value for m in enum_cls]}, got {value!r}")


@dataclass
class Signal:
    """
    A validated enter/exit decision for one instrument.

    Attributes:
        instrument: Instrument the signal refers to.
        price: Execution price (> 0), or None for a pending decision.
        date: Execution timestamp, or None for a pending decision.
        action: SignalAction (accepts "buy"/"BUY"/...).
        type: SignalType (accepts "enter"/"Exit"/...).
        status: SignalStatus; forced to PENDING when price and date are both None.
        trigger_date: Optional date of the bar that triggered the decision.

    Raises:
        ValidationError: On a missing instrument, partial nullness of price/date,
            a non-positive or non-numeric price, a non-datetime date, or an
            unknown action/type/status.
    """
    instrument: Instrument
    price: Optional[float]
    date: Optional[pd.Timestamp]
    action: SignalAction
    type: SignalType
    status: SignalStatus = SignalStatus.EXECUTED
    trigger_date: Optional[pd.Timestamp] = None

    def __post_init__(self):
        if self.instrument is None:
            raise _missing("instrument")

        self.action = _parse_choice(SignalAction, self.action, "action")
        self.type = _parse_choice(SignalType, self.type, "type")
        self.status = _parse_choice(SignalStatus, self.status, "status")

        if self.price is None and self.date is None:
            self.status = SignalStatus.PENDING
        else:
            self._validate_price()
            self._validate_date()

        if self.trigger_date is not None:
            if not is_datetime_like(self.trigger_date):
                raise _missing(f"trigger_date must be a datetime, got {self.trigger_date!r}")
            self.trigger_date = coerce_timestamp(self.trigger_date)

    def _validate_price(self) -> None:
        price = self.price
        if price is None or isinstance(price, bool) or not isinstance(price, Real):
            raise _missing(f"price must be a positive number, got {price!r}")
        if math.isnan(price) or price <= 0:
            raise _missing(f"price must be a positive number, got {price!r}")
        self.price = float(price)

    def _validate_date(self) -> None:
        if not is_datetime_like(self.date):
            raise _missing(f"date must be a datetime, got {self.date!r}")
        self.date = coerce_timestamp(self.date)

    @property
    def is_pending(self) -> bool:
        return self.status == SignalStatus.PENDING

    def to_dict(self) -> dict:
        """JSON-ready representation used by the document store."""
        return {
            'instrument': self.instrument.to_dict(),
            'price': self.price,
            'date': self.date.isoformat() if self.date is not None else None,
            'action': self.action.value,
            'type': self.type.value,
            'status': self.status.value,
            'trigger_date': self.trigger_date.isoformat() if self.trigger_date is not None else None,
        }
