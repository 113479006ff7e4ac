# src/adapters/factory.py
from typing import Dict, Type

from src.config.exceptions import ConfigurationError
from .base import InfrastructureAdapter
from .heroku import HerokuAdapter
from .kubernetes import KubernetesAdapter


class AdapterFactory:
    """Factory class for creating infrastructure adapters"""

    _adapters: Dict[str, Type[InfrastructureAdapter]] = {
        "heroku": HerokuAdapter,
        "kubernetes": KubernetesAdapter,
        "k8s": KubernetesAdapter,
    }

    @classmethod
    def create(cls, adapter_name: str, config) -> InfrastructureAdapter:
        adapter_class = cls._adapters.get((adapter_name or "").lower())
        if not adapter_class:
            raise ConfigurationError(
                f"Unknown adapter: {adapter_name}. "
                f"Available adapters: {', '.join(sorted(cls._adapters))}"
            )
        return adapter_class(config)

    @classmethod
    def register(cls, adapter_name: str, adapter_class: Type[InfrastructureAdapter]) -> None:
        if not issubclass(adapter_class, InfrastructureAdapter):
            raise TypeError(f"{adapter_class.__name__} must subclass InfrastructureAdapter")
        cls._adapters[adapter_name.lower()] = adapter_class

    @classmethod
    def available(cls):
        return sorted(cls._adapters)
