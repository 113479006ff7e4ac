# src/adapters/__init__.py
from .base import InfrastructureAdapter
from .heroku import HerokuAdapter
from .kubernetes import KubernetesAdapter
from .factory import AdapterFactory
from .retry import with_retry, is_retryable
from .exceptions import AdapterError, HerokuAPIError, KubernetesAPIError
from src.config.models import RetryPolicy

__all__ = [
    'InfrastructureAdapter',
    'HerokuAdapter',
    'KubernetesAdapter',
    'AdapterFactory',
    'RetryPolicy',
    'with_retry',
    'is_retryable',
    'AdapterError',
    'HerokuAPIError',
    'KubernetesAPIError'
]

__version__ = '1.0.0'
