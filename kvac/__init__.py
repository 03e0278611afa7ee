"""
Anonymous credential module for the CoinJoin voting system
"""

from .credentials import CredentialIssuer, MESSAGE_PREFIX

__all__ = [
    'CredentialIssuer',
    'MESSAGE_PREFIX',
]
