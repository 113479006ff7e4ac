# src/config/__init__.py
from .models import AutoscalerConfig, ScalingStrategy, LockBackend, RetryPolicy
from .exceptions import AutoscalerError, ConfigurationError

__all__ = [
    'AutoscalerConfig',
    'ScalingStrategy',
    'LockBackend',
    'RetryPolicy',
    'AutoscalerError',
    'ConfigurationError'
]

__version__ = '1.0.0'
