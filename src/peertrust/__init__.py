"""
peertrust — mutual-TLS handshake and peer-identity authorization engine.

Terminates TLS connections, demands the peer certificate and decides under
a pin-first / chain-second trust policy whether the peer may proceed.

Built on the Railway-Oriented Programming (ROP) Result type for explicit,
composable error handling.
"""

__version__ = "0.1.0"
