"""
Market Overview - Market Data Resilience Layer

Serves dashboard quotes and historical candles from a warm cache,
falling back across rate-limited upstream providers.
"""
__version__ = "1.0.0"
