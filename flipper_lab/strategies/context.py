"""
Per-instrument strategy state threaded from bar to bar.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from flipper_lab.execution.signal import Signal


class Bias(str, Enum):
    """
    Market direction labels.

    Used both for a rule set's current bias and for the regime filter's
    classification of the reference instrument (which is only ever BULL/BEAR).
    """
    BULL = "bull"
    BEAR = "bear"
    NEUTRAL = "neutral"


@dataclass
class StrategyContext:
    """
    Mutable state carried across one instrument's bar series.

    Attributes:
        bias: Current directional bias of the rule set.
        high_price: Running high since the last flip to bull.
        low_price: Running low since the last flip to bear.
        trigger_price: Price at which the next flip would happen.
        regime: Regime classification for the bar currently being decided on.
        last_signal: Most recent signal emitted on a real bar.
    """
    bias: Bias = Bias.NEUTRAL
    high_price: Optional[float] = None
    low_price: Optional[float] = None
    trigger_price: Optional[float] = None
    regime: Optional[Bias] = None
    last_signal: Optional["Signal"] = None

    def to_dict(self) -> dict:
        return {
            'bias': self.bias.value,
            'high_price': self.high_price,
            'low_price': self.low_price,
            'trigger_price': self.trigger_price,
            'regime': self.regime.value if self.regime is not None else None,
            'last_signal': self.last_signal.to_dict() if self.last_signal is not None else None,
        }
