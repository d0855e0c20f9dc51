#!/usr/bin/env python3
"""
Configuration settings using pydantic-settings for environment variable loading

Each section reads its own env prefix. YAML files supply the base values and
environment variables override them; pool definitions come from the YAML
`pools:` list or, without one, from a single POOL_* pool.
"""

import os
import re
from typing import Any, Dict, List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.metrics import PoolQueries
from ..core.reconciler import ReconcilerConfig
from ..errors import InvalidSpec
from ..models import PoolSpec

# Load environment variables from .env file if it exists
load_dotenv()

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class _EnvOverrideSettings(BaseSettings):
    """Environment beats values passed in (those come from YAML)"""
    model_config = SettingsConfigDict(extra="ignore")

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class PoolConfig(BaseModel):
    """One pool as written in configuration; validated into a PoolSpec later"""
    model_config = {"extra": "ignore"}

    name: str = "default"
    min_size: int = 2
    max_size: int = 6
    desired_size: Optional[int] = None
    scale_up_cooldown: float = 60.0
    scale_down_cooldown: float = 300.0
    target_utilization: float = 0.7

    # Metrics wiring
    utilization_query: str = 'avg(1 - rate(node_cpu_seconds_total{mode="idle"}[2m]))'
    pending_work_query: Optional[str] = None
    node_selector: Optional[str] = None
    node_count_query: Optional[str] = None

    # Executor wiring
    nodegroup: Optional[str] = None

    def spec_fields(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "desired_size": self.min_size if self.desired_size is None else self.desired_size,
            "scale_up_cooldown": self.scale_up_cooldown,
            "scale_down_cooldown": self.scale_down_cooldown,
            "target_utilization": self.target_utilization,
        }

    def queries(self) -> PoolQueries:
        return PoolQueries(
            utilization=self.utilization_query,
            pending_work=self.pending_work_query,
            node_selector=self.node_selector,
            node_count=self.node_count_query,
        )


class PoolSettings(_EnvOverrideSettings, PoolConfig):
    """Single pool configured through POOL_* variables"""
    model_config = SettingsConfigDict(env_prefix="POOL_", extra="ignore")


class ReconcilerSettings(_EnvOverrideSettings):
    """Reconciler tuning shared by every pool"""
    model_config = SettingsConfigDict(env_prefix="RECONCILER_", extra="ignore")

    tick_interval: float = 30.0
    staleness_threshold: Optional[float] = None
    hysteresis_margin: float = 0.1
    failure_threshold: int = 3
    backoff_multiplier: float = 2.0
    backoff_cap_factor: float = 10.0
    assumed_node_capacity: int = 10
    executor_timeout: float = 600.0

    executor: Literal["dry_run", "eks", "docker"] = "dry_run"
    metrics_source: Literal["prometheus", "static"] = "prometheus"
    dry_run: bool = False
    sync_observed_size: bool = True


class PrometheusSettings(_EnvOverrideSettings):
    """Prometheus configuration settings"""
    model_config = SettingsConfigDict(env_prefix="PROMETHEUS_", extra="ignore")

    url: str = "http://prometheus:9090"
    query_timeout: float = 5.0


class KubernetesSettings(_EnvOverrideSettings):
    """Kubernetes configuration settings"""
    model_config = SettingsConfigDict(env_prefix="KUBERNETES_", extra="ignore")

    enabled: bool = True
    in_cluster: bool = False
    kubeconfig_path: Optional[str] = None


class RedisSettings(_EnvOverrideSettings):
    """Redis configuration settings"""
    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "poolscaler:"
    event_stream: Optional[str] = None


class MongoDBSettings(_EnvOverrideSettings):
    """MongoDB configuration settings"""
    model_config = SettingsConfigDict(env_prefix="MONGODB_", extra="ignore")

    enabled: bool = False
    url: str = "mongodb://localhost:27017"
    database_name: str = "poolscaler"


class AwsSettings(_EnvOverrideSettings):
    """EKS executor settings"""
    model_config = SettingsConfigDict(env_prefix="AWS_", extra="ignore")

    region: Optional[str] = None
    cluster_name: str = "poolscaler"
    poll_interval: float = 15.0
    poll_timeout: float = 540.0


class DockerSettings(_EnvOverrideSettings):
    """Docker worker executor settings"""
    model_config = SettingsConfigDict(env_prefix="DOCKER_", extra="ignore")

    network: str = "k3s-network"
    image: str = "rancher/k3s:v1.29.1-k3s1"
    worker_prefix: str = "worker"
    server_url: Optional[str] = None
    token: Optional[str] = None
    max_concurrent: int = 3


class LoggingSettings(_EnvOverrideSettings):
    """Logging configuration settings"""
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: str = "INFO"
    file: Optional[str] = None
    colors: bool = True


class ApiSettings(_EnvOverrideSettings):
    """HTTP status API and Prometheus exposition"""
    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    metrics_port: int = 9091


def expand_env(text: str) -> str:
    """Replace ${VAR} and ${VAR:-default}; unknown variables without a default are left alone"""
    def _replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        if name in os.environ:
            return os.environ[name]
        return default if default is not None else match.group(0)
    return _ENV_PATTERN.sub(_replace, text)


class Settings(BaseModel):
    """Main settings class that includes all sub-settings"""
    environment: str = Field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))

    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    pools: List[PoolConfig] = Field(default_factory=lambda: [PoolSettings()])
    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    mongodb: MongoDBSettings = Field(default_factory=MongoDBSettings)
    aws: AwsSettings = Field(default_factory=AwsSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    def reconciler_config(self) -> ReconcilerConfig:
        """Validated reconciler tuning (raises InvalidSpec)"""
        fields = ReconcilerConfig.model_fields.keys()
        config = ReconcilerConfig.from_config(self.reconciler.model_dump(include=set(fields)))
        uses_eks = self.reconciler.executor == "eks" and not self.reconciler.dry_run
        # The node group wait has to give up before the loop abandons the executor
        if uses_eks and self.aws.poll_timeout >= config.executor_timeout:
            raise InvalidSpec(
                f"aws.poll_timeout ({self.aws.poll_timeout}s) must be shorter than "
                f"reconciler.executor_timeout ({config.executor_timeout}s)"
            )
        return config

    def pool_specs(self) -> List[PoolSpec]:
        """
        Validated specs for every configured pool

        Raises:
            InvalidSpec: On an invalid pool or duplicate pool names
        """
        if not self.pools:
            raise InvalidSpec("no pools configured")

        specs = []
        seen = set()
        for pool in self.pools:
            if pool.name in seen:
                raise InvalidSpec("duplicate pool name", pool=pool.name)
            seen.add(pool.name)
            specs.append(PoolSpec.from_config(pool.spec_fields()))
        return specs

    def pool_queries(self) -> Dict[str, PoolQueries]:
        return {pool.name: pool.queries() for pool in self.pools}

    def nodegroups(self) -> Dict[str, str]:
        return {pool.name: pool.nodegroup for pool in self.pools if pool.nodegroup}

    @classmethod
    def load_from_yaml_with_env_override(cls, yaml_path: str) -> "Settings":
        """
        Load settings from a YAML file and override with environment variables

        Args:
            yaml_path: Path to the YAML file; a missing file yields env-only settings

        Raises:
            InvalidSpec: If the file or any section fails validation
        """
        yaml_config: Dict[str, Any] = {}
        if os.path.exists(yaml_path):
            with open(yaml_path, 'r') as f:
                try:
                    yaml_config = yaml.safe_load(expand_env(f.read())) or {}
                except yaml.YAMLError as e:
                    raise InvalidSpec(f"cannot parse {yaml_path}: {e}") from e
            if not isinstance(yaml_config, dict):
                raise InvalidSpec(f"{yaml_path} must contain a mapping at the top level")

        try:
            pools_config = yaml_config.get("pools")
            if pools_config:
                pools = [PoolConfig(**entry) for entry in pools_config]
            else:
                pools = [PoolSettings(**yaml_config.get("pool", {}))]

            return cls(
                environment=yaml_config.get("environment", os.getenv("ENVIRONMENT", "development")),
                reconciler=ReconcilerSettings(**yaml_config.get("reconciler", {})),
                pools=pools,
                prometheus=PrometheusSettings(**yaml_config.get("prometheus", {})),
                kubernetes=KubernetesSettings(**yaml_config.get("kubernetes", {})),
                redis=RedisSettings(**yaml_config.get("redis", {})),
                mongodb=MongoDBSettings(**yaml_config.get("mongodb", {})),
                aws=AwsSettings(**yaml_config.get("aws", {})),
                docker=DockerSettings(**yaml_config.get("docker", {})),
                logging=LoggingSettings(**yaml_config.get("logging", {})),
                api=ApiSettings(**yaml_config.get("api", {})),
            )
        except (ValidationError, TypeError) as e:
            raise InvalidSpec(f"invalid configuration in {yaml_path}: {e}") from e
