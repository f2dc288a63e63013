from __future__ import annotations


class CouponLoadError(Exception):
    """Base class for conditions that abort a load run."""


class ConfigurationError(CouponLoadError):
    """Raised when a scenario profile or vocabulary file is invalid."""


class ProvisioningError(CouponLoadError):
    """Raised when the bootstrap protocol receives a non-success response."""


class VerificationChannelError(CouponLoadError):
    """Raised when the completion log cannot be fetched or has no result payload."""
