"""Polymarket copy-trading bot.

Scans the CTF Exchange contracts on Polygon for trades made by watched
wallets and replicates them under configurable risk limits.
"""

__version__ = "0.1.0"
