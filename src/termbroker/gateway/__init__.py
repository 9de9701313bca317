"""Transport gateway: authenticates connections and speaks the terminal protocol."""

from termbroker.gateway.auth import Identity, JWTAuthenticator
from termbroker.gateway.connection import Connection, ConnectionState
from termbroker.gateway.gateway import Gateway

__all__ = [
    "Connection",
    "ConnectionState",
    "Gateway",
    "Identity",
    "JWTAuthenticator",
]
