"""
Cycle Ledger

Tracks repeated currency-arbitrage cycles (buy units with TRY or USD, sell
them back, settle between cycles) and simulates arbitrage loops before any
real transaction is recorded. All financial math uses Decimal.
"""

__version__ = "1.0.0"
