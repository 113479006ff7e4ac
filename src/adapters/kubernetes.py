# src/adapters/kubernetes.py
import os
import ssl
from typing import Any, Dict, List, Optional

from .base import InfrastructureAdapter
from .exceptions import KubernetesAPIError

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
APPS_API_PATH = "apis/apps/v1"


class KubernetesAdapter(InfrastructureAdapter):
    """
    Scales a Deployment's replica count through the apps/v1 API.

    Connection settings come from the configuration when given, otherwise
    from the pod's mounted service account (in-cluster).
    """

    error_class = KubernetesAPIError

    def __init__(self, config, service_account_dir: str = SERVICE_ACCOUNT_DIR):
        super().__init__(config)
        self.service_account_dir = service_account_dir

    @property
    def name(self) -> str:
        return "Kubernetes"

    @property
    def deployment_name(self) -> Optional[str]:
        return self.config.kubernetes_deployment

    @property
    def namespace(self) -> str:
        return self.config.kubernetes_namespace or "default"

    @property
    def in_cluster(self) -> bool:
        return os.path.exists(os.path.join(self.service_account_dir, "token"))

    @property
    def api_server(self) -> str:
        if self.config.kubernetes_api_server:
            return self.config.kubernetes_api_server.rstrip("/")
        host = os.environ.get("KUBERNETES_SERVICE_HOST", "kubernetes.default.svc")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
        return f"https://{host}:{port}"

    def configuration_errors(self) -> List[str]:
        errors = []
        if not self.deployment_name:
            errors.append("kubernetes_deployment is required")
        if not self.config.kubernetes_namespace:
            errors.append("kubernetes_namespace is required")
        return errors

    def _token(self) -> Optional[str]:
        if self.config.kubernetes_token:
            return self.config.kubernetes_token
        token_file = os.path.join(self.service_account_dir, "token")
        if os.path.exists(token_file):
            with open(token_file) as f:
                return f.read().strip()
        return None

    def _ca_file(self) -> Optional[str]:
        if self.config.kubernetes_ca_file:
            return self.config.kubernetes_ca_file
        ca_file = os.path.join(self.service_account_dir, "ca.crt")
        return ca_file if os.path.exists(ca_file) else None

    def _ssl_context(self) -> Any:
        if not self.config.kubernetes_verify_ssl:
            return False
        ca_file = self._ca_file()
        if ca_file:
            return ssl.create_default_context(cafile=ca_file)
        return None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _deployment_url(self) -> str:
        return (
            f"{self.api_server}/{APPS_API_PATH}/namespaces/{self.namespace}"
            f"/deployments/{self.deployment_name}"
        )

    async def current_workers(self) -> int:
        async def fetch():
            return await self._request("GET", self._deployment_url(), headers=self._headers())

        try:
            deployment = await self._with_retry(fetch, "deployment info")
        except KubernetesAPIError as e:
            if e.not_found:
                self.logger.debug(
                    f"Deployment '{self.deployment_name}' not found in namespace "
                    f"'{self.namespace}', treating as 0 workers"
                )
                return 0
            raise KubernetesAPIError(
                f"Failed to get deployment info: {str(e)}",
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

        deployment = self._expect_mapping(deployment, "deployment info")
        spec = deployment.get("spec") or {}
        return int(spec.get("replicas") or 0)

    async def scale(self, quantity: int) -> int:
        if self.dry_run:
            self.log_dry_run(
                f"Would scale deployment {self.deployment_name} to {quantity} replicas "
                f"in namespace {self.namespace}"
            )
            return quantity

        headers = self._headers()
        headers["Content-Type"] = "application/merge-patch+json"

        async def patch():
            return await self._request(
                "PATCH",
                self._deployment_url(),
                headers=headers,
                payload={"spec": {"replicas": quantity}},
            )

        try:
            await self._with_retry(patch, "deployment patch")
        except KubernetesAPIError as e:
            raise KubernetesAPIError(
                f"Failed to scale deployment {self.deployment_name} to {quantity}: {str(e)}",
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

        return quantity
