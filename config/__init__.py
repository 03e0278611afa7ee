"""Configuration management for the CoinJoin voting system."""

from .config import (
    SystemConfig,
    CredentialConfig,
    BroadcastConfig,
    MonitorConfig,
    CoinJoinConfig,
    load_config,
    save_config
)

__all__ = [
    'SystemConfig',
    'CredentialConfig',
    'BroadcastConfig',
    'MonitorConfig',
    'CoinJoinConfig',
    'load_config',
    'save_config'
]
