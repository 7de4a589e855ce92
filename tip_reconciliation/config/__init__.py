"""Configuration package for the tip reconciliation service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
