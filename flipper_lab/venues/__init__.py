"""
Price-provider and persistence adapters.

Interfaces to external price-history sources (HTTP API, local CSV files) and to
the document store that receives signals, contexts, trades and statistics.
"""
