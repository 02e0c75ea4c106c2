"""
g3geo Privacy Package
"""

from .obfuscator import PrivacyObfuscator, OFFSETS

__all__ = ["PrivacyObfuscator", "OFFSETS"]
