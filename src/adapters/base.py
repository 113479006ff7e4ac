# src/adapters/base.py
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

import aiohttp

from src.config.models import AutoscalerConfig
from src.log_handler.logging_config import get_logger
from .exceptions import AdapterError
from .retry import with_retry


class InfrastructureAdapter(ABC):
    """
    Contract between the scaler and the platform running the workers.

    Subclasses implement ``current_workers`` and ``scale``; a "not found"
    response when reading the fleet size means zero workers, not an error.
    Mutating calls must be skipped (and logged) when the configuration is in
    dry-run mode.
    """

    error_class: Type[AdapterError] = AdapterError

    def __init__(self, config: AutoscalerConfig):
        self.config = config
        self.logger = get_logger(type(self).__module__, config.name)

    @abstractmethod
    async def current_workers(self) -> int:
        """Return the number of workers currently declared on the platform."""

    @abstractmethod
    async def scale(self, quantity: int) -> int:
        """Set the worker count and return the confirmed count."""

    @property
    def name(self) -> str:
        class_name = type(self).__name__
        if class_name.endswith("Adapter") and class_name != "Adapter":
            return class_name[: -len("Adapter")]
        return class_name

    def configuration_errors(self) -> List[str]:
        return []

    def is_configured(self) -> bool:
        return not self.configuration_errors()

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def log_dry_run(self, message: str) -> None:
        self.logger.info(f"[DRY RUN] {message}")

    async def _with_retry(self, operation, description: str):
        return await with_retry(
            operation, self.config.retry_policy, f"{self.name} {description}"
        )

    def _expect_mapping(self, body: Any, description: str) -> Dict[str, Any]:
        if not isinstance(body, dict):
            raise self.error_class(
                f"Unexpected {description} response: expected a JSON object, "
                f"got {type(body).__name__}",
                response_body=body,
            )
        return body

    def _ssl_context(self) -> Any:
        # aiohttp treats None as "use default verification"
        return None

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one HTTP call and return the decoded body.

        Non-2xx responses and transport failures are raised as ``error_class``;
        transport failures carry no status code so they count as retryable.
        """
        headers = dict(headers or {})
        request_kwargs: Dict[str, Any] = {
            "headers": headers,
            "timeout": aiohttp.ClientTimeout(total=self.config.adapter_timeout_seconds),
        }
        if payload is not None:
            headers.setdefault("Content-Type", "application/json")
            request_kwargs["data"] = json.dumps(payload)

        ssl_context = self._ssl_context()
        if ssl_context is not None:
            request_kwargs["ssl"] = ssl_context

        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(method, url, **request_kwargs) as response:
                    body = await self._get_response_body(response)
                    if 200 <= response.status < 300:
                        return body
                    raise self.error_class(
                        f"{method} {url} returned {response.status}",
                        status_code=response.status,
                        response_body=body,
                    )
        except aiohttp.ClientError as e:
            raise self.error_class(f"{method} {url} failed: {str(e)}") from e
        except asyncio.TimeoutError as e:
            raise self.error_class(
                f"{method} {url} timed out after {self.config.adapter_timeout_seconds} seconds"
            ) from e

    async def _get_response_body(self, response: aiohttp.ClientResponse) -> Any:
        """Extract and parse response body based on content type."""
        content_type = response.headers.get("Content-Type", "").lower()

        try:
            if "json" in content_type:
                return await response.json(content_type=None)
            return await response.text()
        except (aiohttp.ContentTypeError, ValueError) as e:
            self.logger.warning(f"Failed to parse response body: {str(e)}")
            return await response.text()
