"""
Fleet management modules.
"""
from .ssh import CommandResult, ConnectionPool, CredentialTable, RemoteGateway

__all__ = [
    'CommandResult',
    'ConnectionPool',
    'CredentialTable',
    'RemoteGateway',
]
