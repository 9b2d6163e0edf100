"""
Generic utility functions shared across modules.

Includes the error taxonomy, binary date search, the bounded async task queue,
moving-average helpers, and logging setup.
"""
