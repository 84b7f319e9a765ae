"""Configuration package for the order engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
