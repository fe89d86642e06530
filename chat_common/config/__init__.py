"""
Configuration module: Settings, logging.
"""

from chat_common.config.settings import settings, get_settings, Settings
from chat_common.config.logging import get_logger, setup_logging, mask_token

__all__ = [
    # settings
    "settings",
    "get_settings",
    "Settings",
    # logging
    "get_logger",
    "setup_logging",
    "mask_token",
]
