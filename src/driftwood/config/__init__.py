"""Runtime settings for driftwood."""

from driftwood.config.settings import ReplaceStrategy, Settings, get_settings

__all__ = ["ReplaceStrategy", "Settings", "get_settings"]
