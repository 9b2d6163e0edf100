"""
Error taxonomy for the simulation core.

**Conceptual**: Three failure families exist inside the core, and they mean very
different things to a caller:
  - ValidationError: bad input handed to a value object (e.g., a Signal with a
    non-positive price). The caller built something malformed.
  - OutOfRangeError: a date lookup outside the interval covered by a bar series.
  - LogicError: an internal invariant of a strategy was violated (e.g., an odd
    signal count ending in an exit). This is a defect in a concrete rule set,
    not bad external data.

**Handling contract**: OutOfRangeError and LogicError are fatal for the unit of
work that raised them and are never retried internally. Orchestration code that
fans work out across instruments (see utils/task_queue.py) logs and skips the
failing instrument instead of aborting the whole run.
"""


class FlipperLabError(Exception):
    """Base class for all errors raised by the simulation core."""
    pass


class ValidationError(FlipperLabError, ValueError):
    """
    Raised when a value object is constructed from malformed input.

    **Examples**: Signal with a missing instrument, price <= 0, a date that is
    not a datetime instance, or an unknown action/type; Trade whose entry does
    not precede its exit.
    """
    pass


class OutOfRangeError(FlipperLabError, LookupError):
    """
    Raised when a target date lies outside a bar series' date interval.

    **Recovery**: None inside the core. The caller asked for a window that the
    price history does not cover; skip the instrument or widen the history.
    """
    pass


class LogicError(FlipperLabError, RuntimeError):
    """
    Raised when a strategy invariant is violated.

    **Conceptual**: Signals must alternate enter/exit. If they do not, the
    concrete rule set produced an impossible sequence; the result of the test
    cannot be trusted and the run for that instrument is aborted.
    """
    pass
