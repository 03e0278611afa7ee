"""Error taxonomy shared by every layer of the CoinJoin voting system."""

from typing import Any, Dict, List, Optional


class VotingSystemError(Exception):
    """Base exception for the voting system"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.__class__.__name__,
            'message': self.message,
            'details': self.details
        }


class ValidationError(VotingSystemError):
    """Malformed request shape or payload"""
    pass


class AuthorizationError(VotingSystemError):
    """Invalid, reused or expired credential"""
    pass


class StateError(VotingSystemError):
    """Operation attempted in an incompatible session or vote state"""
    pass


class NetworkError(VotingSystemError):
    """All broadcast or confirmation backends exhausted"""

    def __init__(self, message: str, failures: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, {'failures': failures or []})
        self.failures = failures or []


class CryptoError(VotingSystemError):
    """Signature or proof mismatch"""
    pass


class ConfigError(VotingSystemError):
    """Missing or invalid required configuration"""
    pass
