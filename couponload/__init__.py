"""
Load and correctness harness for the coupon issuance service and its
waiting-room gate.
"""

from .main import main

__all__ = ["main"]
