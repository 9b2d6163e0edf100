"""
Configuration management and settings.

Loads environment variables, validates settings, and provides typed configuration
objects to the rest of the system.
"""
