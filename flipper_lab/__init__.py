"""
flipper_lab: bar-by-bar strategy simulation and capital-constrained portfolio replay.

Walks historical per-instrument price series through a rule-based state machine,
pairs the resulting signals into fee-adjusted trades, and replays the union of
those trades through a cash- and slot-limited portfolio to build an equity curve.
"""
