"""Configuration for the access portal."""
from access_portal.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
