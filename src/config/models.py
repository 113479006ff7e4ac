# src/config/models.py
import os
import random
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import ConfigurationError


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ENV_PREFIX = "AUTOSCALER_"


class ScalingStrategy(str, Enum):
    FIXED = "fixed"
    PROPORTIONAL = "proportional"
    # Placeholder for tiered thresholds; currently computes the same targets as FIXED.
    STEP_FUNCTION = "step_function"


class LockBackend(str, Enum):
    POSTGRES_ADVISORY = "postgres_advisory"
    MYSQL_NAMED = "mysql_named"
    TABLE = "table"

    @classmethod
    def for_dialect(cls, dialect_name: str) -> "LockBackend":
        """Pick the strongest locking primitive a SQLAlchemy dialect offers."""
        if dialect_name == "postgresql":
            return cls.POSTGRES_ADVISORY
        if dialect_name in ("mysql", "mariadb"):
            return cls.MYSQL_NAMED
        return cls.TABLE


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay: float = Field(default=1.0, ge=0.0, le=60.0)
    max_delay: float = Field(default=30.0, ge=0.0, le=3600.0)
    exponential_base: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter: bool = Field(default=True)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and optional jitter."""
        delay = min(
            self.initial_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )

        if self.jitter:
            delay *= 0.5 + random.random()
            delay = min(delay, self.max_delay)

        return delay


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


class AutoscalerConfig(BaseModel):
    """Settings for one worker group.

    Build instances through :meth:`build` (or ``src.main.configure``) so that
    type errors and rule violations both surface as a single
    :class:`ConfigurationError`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = "default"

    # Worker limits
    min_workers: int = 1
    max_workers: int = 10

    # Scale-up thresholds
    scale_up_queue_depth: int = 100
    scale_up_latency_seconds: float = 300.0
    scale_up_increment: int = 1

    # Scale-down thresholds
    scale_down_queue_depth: int = 10
    scale_down_latency_seconds: float = 30.0
    scale_down_decrement: int = 1

    # Cold start thresholds, only consulted at zero workers
    scale_from_zero_queue_depth: Optional[int] = None
    scale_from_zero_latency_seconds: Optional[float] = None

    # Strategy
    scaling_strategy: ScalingStrategy = ScalingStrategy.FIXED
    scale_up_jobs_per_worker: int = 50
    scale_up_latency_per_worker: float = 60.0
    scale_down_jobs_per_worker: int = 50

    # Cooldowns
    cooldown_seconds: float = 120.0
    scale_up_cooldown_seconds: Optional[float] = None
    scale_down_cooldown_seconds: Optional[float] = None
    persist_cooldowns: bool = True

    # Locking
    lock_key: Optional[str] = None
    lock_timeout_seconds: float = 30.0
    stale_lock_timeout_seconds: float = 300.0
    lock_backend: Optional[LockBackend] = None

    # Behavior
    enabled: bool = True
    dry_run: bool = False

    # Job store
    queues: Optional[List[str]] = None
    database_url: Optional[str] = Field(default_factory=lambda: _env("DATABASE_URL"))
    table_prefix: str = "solid_queue_"
    engine: Optional[Any] = Field(default=None, exclude=True, repr=False)

    # Audit trail
    record_events: bool = True
    record_all_events: bool = False

    # Infrastructure adapter
    adapter_name: str = "heroku"
    adapter: Optional[Any] = Field(default=None, exclude=True, repr=False)
    adapter_timeout_seconds: float = 30.0
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    # Heroku
    heroku_api_key: Optional[str] = Field(default_factory=lambda: _env("HEROKU_API_KEY"))
    heroku_app_name: Optional[str] = Field(default_factory=lambda: _env("HEROKU_APP_NAME"))
    process_type: str = "worker"

    # Kubernetes
    kubernetes_deployment: Optional[str] = Field(default_factory=lambda: _env("K8S_DEPLOYMENT"))
    kubernetes_namespace: str = Field(default_factory=lambda: _env("K8S_NAMESPACE", "default"))
    kubernetes_api_server: Optional[str] = None
    kubernetes_token: Optional[str] = None
    kubernetes_ca_file: Optional[str] = None
    kubernetes_verify_ssl: bool = True

    @model_validator(mode="after")
    def _default_lock_key(self) -> "AutoscalerConfig":
        # Each worker group gets its own lock so groups can scale in parallel
        if not self.lock_key:
            self.lock_key = f"queue_autoscaler_{self.name}"
        return self

    @classmethod
    def build(cls, **settings: Any) -> "AutoscalerConfig":
        """Create a configuration, converting pydantic errors into ConfigurationError."""
        try:
            return cls(**settings)
        except ValidationError as e:
            messages = []
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"]) or "config"
                messages.append(f"{location}: {error['msg']}")
            raise ConfigurationError(", ".join(messages)) from e

    @classmethod
    def from_env(
        cls, name: str = "default", environ: Optional[Mapping[str, str]] = None
    ) -> "AutoscalerConfig":
        """Build a configuration from AUTOSCALER_* environment variables.

        ``AUTOSCALER_MIN_WORKERS=2`` sets ``min_workers``; ``AUTOSCALER_QUEUES``
        takes a comma separated list.
        """
        environ = os.environ if environ is None else environ
        settings: Dict[str, Any] = {"name": name}
        skipped = {"name", "engine", "adapter", "retry_policy"}

        for field_name in cls.model_fields:
            if field_name in skipped:
                continue
            raw = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is None or raw == "":
                continue
            if field_name == "queues":
                settings["queues"] = [q.strip() for q in raw.split(",") if q.strip()]
            else:
                settings[field_name] = raw

        return cls.build(**settings)

    @property
    def effective_scale_up_cooldown(self) -> float:
        if self.scale_up_cooldown_seconds is not None:
            return self.scale_up_cooldown_seconds
        return self.cooldown_seconds

    @property
    def effective_scale_down_cooldown(self) -> float:
        if self.scale_down_cooldown_seconds is not None:
            return self.scale_down_cooldown_seconds
        return self.cooldown_seconds

    @property
    def scale_from_zero_enabled(self) -> bool:
        return (
            self.scale_from_zero_queue_depth is not None
            or self.scale_from_zero_latency_seconds is not None
        )

    @property
    def is_default(self) -> bool:
        return self.name == "default"

    def get_engine(self) -> Optional[Any]:
        """Return the job-store engine, creating it from database_url on first use."""
        if self.engine is None and self.database_url:
            from src.database import create_db_engine

            self.engine = create_db_engine(self.database_url)
        return self.engine

    def get_adapter(self) -> Any:
        """Return the infrastructure adapter, building it from adapter_name on first use."""
        if self.adapter is None:
            # Imported at runtime to avoid circular imports
            from src.adapters import AdapterFactory

            self.adapter = AdapterFactory.create(self.adapter_name, self)
        return self.adapter

    def resolve_lock_backend(self) -> LockBackend:
        if self.lock_backend is not None:
            return self.lock_backend

        engine = self.get_engine()
        if engine is None:
            raise ConfigurationError(
                f"No database configured for worker group '{self.name}'; "
                "set database_url or engine to enable locking"
            )
        return LockBackend.for_dialect(engine.dialect.name)

    def validate_config(self) -> bool:
        """Check every rule and raise one ConfigurationError listing all violations."""
        errors: List[str] = []

        try:
            errors.extend(self.get_adapter().configuration_errors())
        except ConfigurationError as e:
            errors.append(str(e))

        if self.min_workers < 0:
            errors.append("min_workers must be >= 0")
        if self.max_workers <= 0:
            errors.append("max_workers must be > 0")
        if self.min_workers > self.max_workers:
            errors.append("min_workers cannot exceed max_workers")

        if self.scale_up_queue_depth <= 0:
            errors.append("scale_up_queue_depth must be > 0")
        if self.scale_up_latency_seconds <= 0:
            errors.append("scale_up_latency_seconds must be > 0")
        if self.scale_up_increment <= 0:
            errors.append("scale_up_increment must be > 0")

        if self.scale_down_queue_depth < 0:
            errors.append("scale_down_queue_depth must be >= 0")
        if self.scale_down_latency_seconds < 0:
            errors.append("scale_down_latency_seconds must be >= 0")
        if self.scale_down_decrement <= 0:
            errors.append("scale_down_decrement must be > 0")

        if self.scale_from_zero_queue_depth is not None and self.scale_from_zero_queue_depth <= 0:
            errors.append("scale_from_zero_queue_depth must be > 0")
        if (
            self.scale_from_zero_latency_seconds is not None
            and self.scale_from_zero_latency_seconds < 0
        ):
            errors.append("scale_from_zero_latency_seconds must be >= 0")

        if self.scale_up_jobs_per_worker <= 0:
            errors.append("scale_up_jobs_per_worker must be > 0")
        if self.scale_up_latency_per_worker <= 0:
            errors.append("scale_up_latency_per_worker must be > 0")
        if self.scale_down_jobs_per_worker <= 0:
            errors.append("scale_down_jobs_per_worker must be > 0")

        if self.cooldown_seconds < 0:
            errors.append("cooldown_seconds must be >= 0")
        if self.scale_up_cooldown_seconds is not None and self.scale_up_cooldown_seconds < 0:
            errors.append("scale_up_cooldown_seconds must be >= 0")
        if self.scale_down_cooldown_seconds is not None and self.scale_down_cooldown_seconds < 0:
            errors.append("scale_down_cooldown_seconds must be >= 0")

        if self.lock_timeout_seconds <= 0:
            errors.append("lock_timeout_seconds must be > 0")
        if self.stale_lock_timeout_seconds <= 0:
            errors.append("stale_lock_timeout_seconds must be > 0")

        if not self.table_prefix or not self.table_prefix.strip():
            errors.append("table_prefix cannot be empty")
        elif not self.table_prefix.endswith("_"):
            errors.append("table_prefix must end with an underscore")
        elif not IDENTIFIER_PATTERN.match(self.table_prefix):
            errors.append("table_prefix must contain only letters, digits and underscores")

        if self.queues is not None and any(not q or not q.strip() for q in self.queues):
            errors.append("queues cannot contain empty names")

        if errors:
            raise ConfigurationError(", ".join(errors))

        return True
