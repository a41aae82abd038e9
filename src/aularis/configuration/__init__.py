"""Configuration loading for Aularis."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    CollaboratorSettings,
    QueueSettings,
    ScheduleSettings,
    Settings,
    StateBackend,
    StateSettings,
    TenantSettings,
    TunnelSettings,
    load_settings,
    save_settings,
    validate_settings_file,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "CollaboratorSettings",
    "QueueSettings",
    "ScheduleSettings",
    "Settings",
    "StateBackend",
    "StateSettings",
    "TenantSettings",
    "TunnelSettings",
    "load_settings",
    "save_settings",
    "validate_settings_file",
]
