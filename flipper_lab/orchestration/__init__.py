"""
High-level orchestration of universe-wide backtests.

Coordinates price providers, strategies, persistence, and the portfolio replay
into end-to-end runs.
"""
