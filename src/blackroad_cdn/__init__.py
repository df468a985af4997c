"""BlackRoad media CDN gateway."""

__version__ = "0.1.0"
