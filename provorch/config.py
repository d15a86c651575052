"""
Configuration management for provorch.

Loads and validates provision.yaml. The default location is
$PROVORCH_HOME/provision.yaml, with PROVORCH_HOME defaulting to ~/.provorch.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from provorch.collaborators.shell import PackageSpec
from provorch.errors import ConfigError
from provorch.probe import HttpProbe, ProbeTarget, ProcessProbe, TcpProbe
from provorch.retry import RetryPolicy

__all__ = [
    "ConfigError",
    "ProvisionConfig",
    "ServiceConfig",
    "StageSettings",
    "get_provorch_home",
    "default_config",
    "get_default_config_path",
    "load_config",
]

# Stage types that do not halt the pipeline unless configured otherwise
NON_CRITICAL_TYPES = frozenset({"firewall", "offline_check"})


def get_provorch_home() -> Path:
    """Resolve the provorch home directory."""
    return Path(os.environ.get("PROVORCH_HOME", "~/.provorch")).expanduser()


def get_default_config_path() -> Path:
    return get_provorch_home() / "provision.yaml"


class StageSettings:
    """Configuration for a single pipeline stage."""

    def __init__(self, data: Dict[str, Any]):
        self.name = data.get("name", "")
        self.type = data.get("type")
        self.enabled = data.get("enabled", True)
        self.description = data.get("description", "")
        self.requires = tuple(data.get("requires", ()))
        critical = data.get("critical")
        self.critical = (self.type not in NON_CRITICAL_TYPES) if critical is None else bool(critical)

        # Stage-specific config
        self.extra = {k: v for k, v in data.items() if k not in [
            "name", "type", "enabled", "description", "requires", "critical"
        ]}

    def get(self, key: str, default: Any = None) -> Any:
        """Get extra configuration value."""
        return self.extra.get(key, default)

    def validate(self) -> None:
        if not self.name:
            raise ConfigError("Stage is missing 'name'")
        if not self.type:
            raise ConfigError(f"Stage {self.name}: missing 'type'")

    def __repr__(self) -> str:
        return f"StageSettings(name={self.name}, type={self.type}, enabled={self.enabled})"


class ServiceConfig:
    """Configuration for one supervised local service."""

    def __init__(self, data: Dict[str, Any], home: Path):
        self.name = data.get("name", "")
        self.probe = data.get("probe", {})
        self.command = data.get("command")
        self.env = {k: str(v) for k, v in (data.get("env") or {}).items()}
        self.cwd = data.get("cwd")
        self.log = _expand(data["log"], home) if data.get("log") else None
        self.container = data.get("container")
        self.depends_on = frozenset(data.get("depends_on", ()))
        self.required = data.get("required", True)
        self.retry = data.get("retry")
        self.probe_timeout = data.get("probe_timeout")
        self.port = data.get("port")
        self.settle = float(data.get("settle", 0.5))

    def probe_target(self) -> ProbeTarget:
        """Build the readiness probe described by the `probe` block."""
        if "http" in self.probe:
            return HttpProbe(url=self.probe["http"], method=self.probe.get("method", "GET"))
        if "tcp" in self.probe:
            host, _, port = str(self.probe["tcp"]).rpartition(":")
            return TcpProbe(host=host or "127.0.0.1", port=int(port))
        if "process" in self.probe:
            return ProcessProbe(process_name=self.probe["process"])
        raise ConfigError(f"Service {self.name}: probe must define one of http, tcp, process")

    def retry_policy(self, default: RetryPolicy) -> Optional[RetryPolicy]:
        if not self.retry:
            return None
        try:
            return RetryPolicy.from_dict(self.retry, default=default)
        except ValueError as e:
            raise ConfigError(f"Service {self.name}: invalid retry: {e}")

    def validate(self) -> None:
        if not self.name:
            raise ConfigError("Service is missing 'name'")
        self.probe_target()
        if self.command and self.container:
            raise ConfigError(f"Service {self.name}: set either 'command' or 'container', not both")
        if self.container and not self.container.get("image"):
            raise ConfigError(f"Service {self.name}: container needs an 'image'")
        if self.name in self.depends_on:
            raise ConfigError(f"Service {self.name} depends on itself")

    def __repr__(self) -> str:
        return f"ServiceConfig(name={self.name}, depends_on={sorted(self.depends_on)})"


def _expand(value: str, home: Path) -> str:
    return value.replace("{home}", str(home)).replace("{date}", datetime.now().strftime("%Y-%m-%d"))


class ProvisionConfig:
    """Complete provisioning configuration."""

    def __init__(self, config_path: Path, raw_config: Optional[Dict[str, Any]] = None):
        self.config_path = config_path
        self.raw_config = raw_config if raw_config is not None else self._load_yaml()
        self.home = get_provorch_home()

        # Pipeline metadata
        pipeline = self.raw_config.get("pipeline", {})
        self.name = pipeline.get("name", "provision")
        self.version = pipeline.get("version", "0.0.0")
        self.description = pipeline.get("description", "")

        # Stages, in declared order
        self.stages: List[StageSettings] = [StageSettings(s) for s in self.raw_config.get("stages", [])]

        # Services
        self.services: List[ServiceConfig] = [
            ServiceConfig(s, self.home) for s in self.raw_config.get("services", [])
        ]

        self.logging = self.raw_config.get("logging", {})
        self.behavior = self.raw_config.get("behavior", {})
        self.retry = self.raw_config.get("retry", {})
        self.probe = self.raw_config.get("probe", {})
        self.packages = self.raw_config.get("packages", {})
        self.container_runtime = self.raw_config.get("container_runtime", {})
        self.models = self.raw_config.get("models", {})
        self.inference = self.raw_config.get("inference", {})
        self.firewall = self.raw_config.get("firewall", {})
        self.offline_check = self.raw_config.get("offline_check", {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: Optional[Path] = None) -> "ProvisionConfig":
        return cls(config_path or Path("<memory>"), raw_config=data)

    def _load_yaml(self) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f)
                if not config:
                    raise ConfigError("Configuration file is empty")
                if not isinstance(config, dict):
                    raise ConfigError("Configuration root must be a mapping")
                return config
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")

    # Stages

    def get_stage(self, name: str) -> Optional[StageSettings]:
        """Get stage configuration by name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def get_enabled_stages(self) -> List[StageSettings]:
        """Get enabled stages in declared order."""
        return [s for s in self.stages if s.enabled]

    # Services

    def get_service(self, name: str) -> Optional[ServiceConfig]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    def get_allowed_ports(self) -> List[int]:
        """Local ports the firewall must leave open: explicit list, else every service port."""
        explicit = self.firewall.get("allowed_ports")
        if explicit:
            return sorted({int(p) for p in explicit})
        return sorted({int(s.port) for s in self.services if s.port})

    # Packages and models

    def get_package_specs(self) -> List[PackageSpec]:
        return [PackageSpec.from_dict(item) for item in self.packages.get("items", [])]

    def get_package_names(self) -> List[str]:
        return [spec.name for spec in self.get_package_specs()]

    def get_required_models(self) -> List[str]:
        return list(self.models.get("required", []))

    def get_model_base_url(self) -> str:
        return self.models.get("base_url", "http://127.0.0.1:11434")

    # Run behaviour

    def get_retry_policy(self) -> RetryPolicy:
        try:
            return RetryPolicy.from_dict(self.retry)
        except ValueError as e:
            raise ConfigError(f"Invalid retry configuration: {e}")

    def get_probe_timeout(self) -> float:
        return float(self.probe.get("timeout", 2.0))

    def should_stop_services_on_cancel(self) -> bool:
        return self.behavior.get("stop_services_on_cancel", False)

    # Logging

    def get_log_file_path(self) -> Path:
        """Get log file path with {home} and {date} interpolation."""
        log_output = self.logging.get("output", "{home}/logs/provorch-{date}.log")
        return Path(_expand(log_output, self.home)).expanduser()

    def get_state_file_path(self) -> Path:
        """Last-run report lives next to the log files."""
        return self.get_log_file_path().parent / "state.json"

    def get_log_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        return self.logging.get("console", True)

    def validate(self) -> None:
        """Validate entire configuration."""
        if not self.name:
            raise ConfigError("Pipeline name is required")

        if not self.get_enabled_stages():
            raise ConfigError("No enabled stages configured")

        seen = set()
        for stage in self.stages:
            stage.validate()
            if stage.name in seen:
                raise ConfigError(f"Duplicate stage name: {stage.name}")
            seen.add(stage.name)

        service_names = set()
        for service in self.services:
            try:
                service.validate()
            except ConfigError as e:
                raise ConfigError(f"Service '{service.name}' validation failed: {e}")
            if service.name in service_names:
                raise ConfigError(f"Duplicate service name: {service.name}")
            service_names.add(service.name)

        for service in self.services:
            unknown = service.depends_on - service_names
            if unknown:
                raise ConfigError(f"Service {service.name} depends on unknown services: {sorted(unknown)}")

        retry = self.get_retry_policy()
        for service in self.services:
            service.retry_policy(retry)

        if self.get_probe_timeout() <= 0:
            raise ConfigError("probe.timeout must be > 0")

        if self.models.get("required") and not isinstance(self.models["required"], list):
            raise ConfigError("models.required must be a list")

    def __repr__(self) -> str:
        return f"ProvisionConfig(name={self.name}, version={self.version}, stages={len(self.stages)})"


def default_config() -> Dict[str, Any]:
    """The configuration `provorch init` writes: a local model daemon behind a translation proxy."""
    return {
        "pipeline": {
            "name": "local-inference",
            "version": "1.0.0",
            "description": "Provision a local, offline inference stack",
        },
        "logging": {
            "level": "INFO",
            "format": "structured",
            "output": "{home}/logs/provorch-{date}.log",
            "console": True,
        },
        "behavior": {"stop_services_on_cancel": False},
        "retry": {"max_attempts": 30, "base_delay": 1.0, "max_total_wait": 120, "backoff": "fixed"},
        "probe": {"timeout": 2.0},
        "packages": {
            "install_template": ["brew", "install", "{name}"],
            "items": [
                {"name": "ollama", "binary": "ollama"},
                {"name": "colima", "binary": "colima"},
                {"name": "docker", "binary": "docker"},
            ],
        },
        "container_runtime": {
            "binary": "docker",
            "start": ["colima", "start"],
            "retry": {"max_attempts": 20, "base_delay": 3.0, "max_total_wait": 180},
        },
        "services": [
            {
                "name": "model-daemon",
                "command": ["ollama", "serve"],
                "env": {"OLLAMA_HOST": "127.0.0.1:11434"},
                "log": "{home}/logs/ollama.log",
                "probe": {"http": "http://127.0.0.1:11434/api/tags"},
                "port": 11434,
            },
            {
                "name": "translation-proxy",
                "container": {
                    "image": "ghcr.io/berriai/litellm:main-stable",
                    "ports": {4000: 4000},
                    "env": {"OLLAMA_API_BASE": "http://host.docker.internal:11434"},
                },
                "depends_on": ["model-daemon"],
                "probe": {"http": "http://127.0.0.1:4000/health/liveliness"},
                "port": 4000,
                "retry": {"max_attempts": 40, "base_delay": 2.0, "max_total_wait": 180},
            },
        ],
        "models": {
            "base_url": "http://127.0.0.1:11434",
            "required": ["llama3.1:8b"],
        },
        "inference": {"model": "llama3.1:8b", "timeout": 300, "options": {"num_predict": 8}},
        "firewall": {},
        "offline_check": {
            "endpoints": ["https://api.openai.com", "https://huggingface.co"],
            "timeout": 3.0,
        },
        "stages": [
            {"name": "packages", "type": "packages"},
            {"name": "container-runtime", "type": "container_runtime"},
            {"name": "services", "type": "services"},
            {"name": "models", "type": "models"},
            {"name": "inference", "type": "inference"},
            {"name": "firewall", "type": "firewall", "enabled": False},
            {"name": "offline-check", "type": "offline_check"},
        ],
    }


def load_config(config_path: Optional[Path] = None) -> ProvisionConfig:
    """
    Load provisioning configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $PROVORCH_HOME/provision.yaml

    Returns:
        ProvisionConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        config_path = get_default_config_path()

    return ProvisionConfig(Path(config_path))
