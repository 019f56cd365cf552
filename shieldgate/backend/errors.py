"""
backend/errors.py

Exception hierarchy shared by the storage layer, the engine and the API.
"""

from __future__ import annotations


class ShieldGateError(Exception):
    """Base class for every error raised by ShieldGate itself."""


class StorageUnavailableError(ShieldGateError):
    """The durable store could not be reached or timed out."""


class InvalidRuleError(ShieldGateError, ValueError):
    """A rule failed validation (non-positive threshold, window, etc.)."""
