"""Configuration module for loading and managing application settings"""
from typing import Dict, Any, Optional
from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS
)

__all__ = ['settings_conf', 'load_config', 'SettingsError', 'DEFAULTS']

def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load and validate configuration.

    Args:
        config_path: Optional directory containing settings.conf. If not provided,
                    will look for settings.conf in current directory.

    Returns:
        Dict of validated settings
    """
    return validate_settings(load_settings_conf(config_path or '.'))

try:
    settings_conf: Dict[str, Any] = load_config()

except SettingsError as e:
    # Re-raise the error but provide more context
    raise type(e)(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        "Please ensure settings.conf is properly configured.\n"
        "See settings.conf.example for the available settings."
    )
