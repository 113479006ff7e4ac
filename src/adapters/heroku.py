# src/adapters/heroku.py
from typing import Any, Dict, List

from .base import InfrastructureAdapter
from .exceptions import HerokuAPIError

HEROKU_API_URL = "https://api.heroku.com"


class HerokuAdapter(InfrastructureAdapter):
    """
    Scales a dyno formation through the Heroku Platform API.

    Configuration: ``heroku_api_key``, ``heroku_app_name`` and
    ``process_type`` (default ``worker``). A process type scaled to zero can
    disappear from the formation, so a 404 reads as zero workers and a 404 on
    update is retried once as a formation create.
    """

    error_class = HerokuAPIError

    def __init__(self, config, base_url: str = HEROKU_API_URL):
        super().__init__(config)
        self.base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "Heroku"

    @property
    def app_name(self) -> str:
        return self.config.heroku_app_name

    @property
    def process_type(self) -> str:
        return self.config.process_type

    def configuration_errors(self) -> List[str]:
        errors = []
        if not self.config.heroku_api_key:
            errors.append("heroku_api_key is required")
        if not self.app_name:
            errors.append("heroku_app_name is required")
        return errors

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/vnd.heroku+json; version=3",
            "Authorization": f"Bearer {self.config.heroku_api_key}",
        }

    def _formation_url(self, process_type: str = None) -> str:
        url = f"{self.base_url}/apps/{self.app_name}/formation"
        if process_type:
            url = f"{url}/{process_type}"
        return url

    async def current_workers(self) -> int:
        async def fetch():
            return await self._request(
                "GET", self._formation_url(self.process_type), headers=self._headers()
            )

        try:
            formation = await self._with_retry(fetch, "formation info")
        except HerokuAPIError as e:
            if e.not_found:
                self.logger.debug(
                    f"Formation '{self.process_type}' not found, treating as 0 workers"
                )
                return 0
            raise HerokuAPIError(
                f"Failed to get formation info: {str(e)}",
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

        formation = self._expect_mapping(formation, "formation info")
        return int(formation.get("quantity") or 0)

    async def scale(self, quantity: int) -> int:
        if self.dry_run:
            self.log_dry_run(f"Would scale {self.process_type} to {quantity} dynos")
            return quantity

        async def update():
            return await self._request(
                "PATCH",
                self._formation_url(self.process_type),
                headers=self._headers(),
                payload={"quantity": quantity},
            )

        try:
            await self._with_retry(update, "formation update")
        except HerokuAPIError as e:
            if e.not_found:
                return await self._create_formation(quantity)
            raise HerokuAPIError(
                f"Failed to scale {self.process_type} to {quantity}: {str(e)}",
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

        return quantity

    async def formation_list(self) -> List[Dict[str, Any]]:
        try:
            return await self._request("GET", self._formation_url(), headers=self._headers())
        except HerokuAPIError as e:
            raise HerokuAPIError(
                f"Failed to list formations: {str(e)}",
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

    async def _create_formation(self, quantity: int) -> int:
        self.logger.info(
            f"Formation '{self.process_type}' not found, creating with quantity {quantity}"
        )

        async def batch_update():
            return await self._request(
                "PATCH",
                self._formation_url(),
                headers=self._headers(),
                payload={"updates": [{"type": self.process_type, "quantity": quantity}]},
            )

        try:
            await self._with_retry(batch_update, "formation batch update")
        except HerokuAPIError as e:
            # Unlike a 404 on update, this means the Procfile has no such entry
            if e.not_found:
                raise HerokuAPIError(
                    f"Process type '{self.process_type}' does not exist. "
                    f"Verify that '{self.process_type}:' is defined in your Procfile "
                    f"(see 'heroku ps -a {self.app_name}').",
                    status_code=e.status_code,
                    response_body=e.response_body,
                ) from e
            raise HerokuAPIError(
                f"Failed to create formation {self.process_type} with quantity {quantity}: {str(e)}",
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

        return quantity
