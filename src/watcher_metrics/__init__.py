"""
Watcher metrics - raw sample logs with tiered, incremental rollups.

This package stores per-source metric samples in append-only line logs,
downsamples them into 1-minute, 5-minute, 30-minute and 2-hour rollup
tiers, and runs the collectors from a single-instance background daemon.
"""

__version__ = "0.1.0"
