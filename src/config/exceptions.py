# src/config/exceptions.py
class AutoscalerError(Exception):
    """Base exception for all autoscaler errors"""
    pass


class ConfigurationError(AutoscalerError):
    """Raised when a worker group configuration is invalid"""
    pass
