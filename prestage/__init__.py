"""prestage - BitTorrent-based VM image prestaging for compute fleets."""

__version__ = "0.3.0"
