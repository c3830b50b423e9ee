from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

IssueBackendName = Literal["beads", "memory"]
ProviderBackendName = Literal["opencode"]
InvalidLabelStrategy = Literal["error", "warning", "ignore"]
INVALID_LABEL_STRATEGIES = ("error", "warning", "ignore")
ISSUE_BACKENDS = ("beads", "memory")


class ConfigError(RuntimeError):
    """Raised when shepherd.toml cannot be parsed or holds unknown settings."""


@dataclass(slots=True)
class WorkerConfig:
    poll_interval_seconds: float = 30.0
    max_concurrent_runs: int = 3


@dataclass(slots=True)
class MonitorConfig:
    poll_interval_seconds: float = 10.0
    stall_threshold_seconds: float = 60.0
    timeout_multiplier: float = 1.0


@dataclass(slots=True)
class ProviderConfig:
    backend: ProviderBackendName = "opencode"
    binary: str = "opencode"
    working_directory: str = "."


@dataclass(slots=True)
class IssuesConfig:
    backend: IssueBackendName = "beads"
    binary: str = "bd"


@dataclass(slots=True)
class WorkflowConfig:
    invalid_label_strategy: InvalidLabelStrategy = "error"
    policies_file: str = ".shepherd/policies.toml"
    agents_file: str = ".shepherd/agents.toml"


@dataclass(slots=True)
class StateConfig:
    data_dir: str = ".shepherd"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(slots=True)
class ShepherdConfig:
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    issues: IssuesConfig = field(default_factory=IssuesConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ShepherdConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ShepherdConfig:
        try:
            config = cls(
                worker=WorkerConfig(**data.get("worker", {})),
                monitor=MonitorConfig(**data.get("monitor", {})),
                provider=ProviderConfig(**data.get("provider", {})),
                issues=IssuesConfig(**data.get("issues", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                state=StateConfig(**data.get("state", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        if config.workflow.invalid_label_strategy not in INVALID_LABEL_STRATEGIES:
            raise ConfigError(
                "workflow.invalid_label_strategy must be one of "
                f"{', '.join(INVALID_LABEL_STRATEGIES)}, "
                f"got {config.workflow.invalid_label_strategy!r}"
            )
        if config.issues.backend not in ISSUE_BACKENDS:
            raise ConfigError(
                f"issues.backend must be one of {', '.join(ISSUE_BACKENDS)}, "
                f"got {config.issues.backend!r}"
            )
        return config

    def to_dict(self) -> dict:
        return {
            "worker": {
                "poll_interval_seconds": self.worker.poll_interval_seconds,
                "max_concurrent_runs": self.worker.max_concurrent_runs,
            },
            "monitor": {
                "poll_interval_seconds": self.monitor.poll_interval_seconds,
                "stall_threshold_seconds": self.monitor.stall_threshold_seconds,
                "timeout_multiplier": self.monitor.timeout_multiplier,
            },
            "provider": {
                "backend": self.provider.backend,
                "binary": self.provider.binary,
                "working_directory": self.provider.working_directory,
            },
            "issues": {
                "backend": self.issues.backend,
                "binary": self.issues.binary,
            },
            "workflow": {
                "invalid_label_strategy": self.workflow.invalid_label_strategy,
                "policies_file": self.workflow.policies_file,
                "agents_file": self.workflow.agents_file,
            },
            "state": {
                "data_dir": self.state.data_dir,
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ShepherdConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["worker", "monitor", "provider", "issues", "workflow", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ShepherdConfig:
    if not path.exists():
        return ShepherdConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    return ShepherdConfig.from_dict(data)


def save_config(path: Path, config: ShepherdConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
