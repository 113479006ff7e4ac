# src/metrics/exceptions.py
from src.config.exceptions import AutoscalerError


class MetricsError(AutoscalerError):
    """Raised when the job store cannot be queried"""
    pass
