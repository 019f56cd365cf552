"""
counters/__init__.py

Public API for the counters sub-package.
"""

from .durable import DurableCounter
from .sliding_window import FingerprintCounter, SlidingWindowCounter, make_fingerprint

__all__ = [
    "DurableCounter",
    "FingerprintCounter",
    "SlidingWindowCounter",
    "make_fingerprint",
]
