# src/metrics/__init__.py
from .models import MetricsSnapshot
from .collector import MetricsCollector
from .exceptions import MetricsError

__all__ = [
    'MetricsSnapshot',
    'MetricsCollector',
    'MetricsError'
]

__version__ = '1.0.0'
