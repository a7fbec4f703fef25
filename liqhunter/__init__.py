"""
HL Liquidation Hunter
=====================

Discovers active Hyperliquid traders from the live trade stream, scans their
positions for liquidation risk, and sends deduplicated alerts.
"""

__version__ = "0.1.0"
