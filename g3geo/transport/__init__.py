"""
g3geo Transport Package

Interfaces to the P2P network and the traffic session server.
"""

from .base import (
    BestEffort,
    best_effort,
    P2PTransport,
    SessionChannel,
    LoopbackHub,
    LoopbackTransport,
    LoopbackSessionChannel,
)
from .http_relay import HttpRelayTransport

__all__ = [
    "BestEffort",
    "best_effort",
    "P2PTransport",
    "SessionChannel",
    "LoopbackHub",
    "LoopbackTransport",
    "LoopbackSessionChannel",
    "HttpRelayTransport",
]
