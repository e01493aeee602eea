"""
mtoken-indexer

Reconciles lending-market events and block ticks into durable
position, transaction and market-parameter tables.
"""

__version__ = "1.0.0"
