"""Utilities for the CoinJoin voting system."""

from .utils import (
    setup_logging,
    PerformanceMonitor,
    compute_hash,
    double_sha256,
    short_id,
    format_duration,
    get_system_info
)
from .errors import (
    VotingSystemError,
    ValidationError,
    AuthorizationError,
    StateError,
    NetworkError,
    CryptoError,
    ConfigError
)

__all__ = [
    'setup_logging',
    'PerformanceMonitor',
    'compute_hash',
    'double_sha256',
    'short_id',
    'format_duration',
    'get_system_info',

    # Errors
    'VotingSystemError',
    'ValidationError',
    'AuthorizationError',
    'StateError',
    'NetworkError',
    'CryptoError',
    'ConfigError'
]
