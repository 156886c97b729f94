"""Configuration package for the order reconciliation service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
