"""
certsigner — External Service Clients

Connection management for Redis (the broker) and the signing service.
"""

from certsigner.clients.redis import RedisClient, StreamBroker
from certsigner.clients.signer import SigningClient

__all__ = ["RedisClient", "SigningClient", "StreamBroker"]
