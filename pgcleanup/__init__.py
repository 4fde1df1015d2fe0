"""Backtest results cleanup: moves aged rows from the main database to an archive."""

__version__ = "1.0.0"
