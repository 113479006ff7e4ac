# src/adapters/exceptions.py
from typing import Any, Optional

from src.config.exceptions import AutoscalerError


class AdapterError(AutoscalerError):
    """Base exception for infrastructure platform API failures"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[Any] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class HerokuAPIError(AdapterError):
    """Raised when a Heroku Platform API call fails"""
    pass


class KubernetesAPIError(AdapterError):
    """Raised when a Kubernetes API call fails"""
    pass
