"""
g3geo Gates Package

Single-use proof tracking and the QR proof-of-presence review gate.
"""

from .replay_guard import ReplayGuard, qr_key
from .qr_proof import QrProofService, BusinessKeys

__all__ = [
    "ReplayGuard",
    "qr_key",
    "QrProofService",
    "BusinessKeys",
]
