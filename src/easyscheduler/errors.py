class ConfigurationError(ValueError):
    """Raised when a scheduler is given an invalid window definition."""
