"""
Strategy engine and concrete rule sets.

Defines the per-bar evaluation capability, the engine that walks a bar series
under the no-look-ahead discipline, the regime filter, and the breakout/retrace
rule set.
"""
