"""
Contest Trading Engine
Virtual stock-trading contests: lifecycle, trade execution, portfolio
valuation and live leaderboards.
"""

__version__ = "1.0.0"
