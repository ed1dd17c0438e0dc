"""Perp Board market-data engine.

Keeps a live OKX perpetual-swap ticker map, refreshes daily RSI and
short-window price changes in the background, and fuses both with
market-cap and funding fundamentals for the dashboard.
"""

__version__ = "0.1.0"
