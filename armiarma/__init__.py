"""Building blocks for a libp2p network crawler: models, persistence, statistics and discovery."""

__version__ = "2.0.0"