"""Stream Wheel: per-profile prize wheel server with live overlay sync."""

__version__ = '1.0.0'
