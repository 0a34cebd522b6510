"""
Capture source adapter.
"""

from .client import CaptureSourceClient

__all__ = ['CaptureSourceClient']
