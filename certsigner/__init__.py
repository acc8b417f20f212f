"""
certsigner — Certificate Signing Relay

Consumes certify requests from a Redis stream, has each certificate signed
and saved by the registry's signing service, and publishes the outcome to
the certified and certify_ack streams.
"""

__version__ = "0.1.0"
