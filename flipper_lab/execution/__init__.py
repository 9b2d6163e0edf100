"""
Signals, trades, fees, and the portfolio allocator.

Turns strategy decisions into fee-adjusted trades and replays them through a
cash- and slot-constrained portfolio.
"""
