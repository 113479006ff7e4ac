# src/coordination/exceptions.py
from src.config.exceptions import AutoscalerError


class LockError(AutoscalerError):
    """Raised when the advisory lock cannot be acquired"""
    pass
