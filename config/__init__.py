"""Configuration package for subscription billing."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
