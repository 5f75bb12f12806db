"""
Error taxonomy for the routing and intelligence core.

Routing failures and security rejections are result values
(ResolutionFailure, ValidationResult). Only the exceptions below are raised,
and each is caught at a component boundary.
"""


class ConfigurationError(Exception):
    """Raised when agent or module configuration is invalid or missing."""
    pass


class TransientAnalysisFailure(Exception):
    """Raised when a provider or store call fails and may succeed on retry."""
    pass
