from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class PathsConfig:
    projects_dir: str = "codev/projects"
    plans_dir: str = "codev/plans"
    protocol_dirs: list[str] = field(
        default_factory=lambda: ["codev/protocols", "codev-skeleton/protocols"]
    )


@dataclass(slots=True)
class WorkflowConfig:
    default_max_iterations: int = 3
    circuit_breaker_threshold: int = 3
    history_limit: int = 200


@dataclass(slots=True)
class BuildConfig:
    binary: str = "claude"
    max_retries: int = 2
    retry_backoff_seconds: float = 5.0
    timeout_seconds: float = 3600.0


@dataclass(slots=True)
class ReviewConfig:
    binary: str = "consult"
    max_retries: int = 2
    retry_backoff_seconds: float = 10.0
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class NotifyConfig:
    endpoint: str = ""
    timeout_seconds: float = 10.0
    dedupe_ttl_seconds: float = 300.0
    dedupe_max_entries: int = 256


@dataclass(slots=True)
class GitConfig:
    remote: str = "origin"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "INFO"


@dataclass(slots=True)
class CheckOverride:
    skip: bool = False
    command: str | None = None
    cwd: str | None = None

    def to_dict(self) -> dict:
        payload: dict = {"skip": self.skip}
        if self.command is not None:
            payload["command"] = self.command
        if self.cwd is not None:
            payload["cwd"] = self.cwd
        return payload


@dataclass(slots=True)
class PorchConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    git: GitConfig = field(default_factory=GitConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    checks: dict[str, CheckOverride] = field(default_factory=dict)

    @classmethod
    def default(cls) -> PorchConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PorchConfig:
        return cls(
            paths=PathsConfig(**data.get("paths", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            build=BuildConfig(**data.get("build", {})),
            review=ReviewConfig(**data.get("review", {})),
            notify=NotifyConfig(**data.get("notify", {})),
            git=GitConfig(**data.get("git", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            checks={
                str(name): CheckOverride(**(override or {}))
                for name, override in data.get("checks", {}).items()
            },
        )

    def to_dict(self) -> dict:
        return {
            "paths": {
                "projects_dir": self.paths.projects_dir,
                "plans_dir": self.paths.plans_dir,
                "protocol_dirs": list(self.paths.protocol_dirs),
            },
            "workflow": {
                "default_max_iterations": self.workflow.default_max_iterations,
                "circuit_breaker_threshold": self.workflow.circuit_breaker_threshold,
                "history_limit": self.workflow.history_limit,
            },
            "build": {
                "binary": self.build.binary,
                "max_retries": self.build.max_retries,
                "retry_backoff_seconds": self.build.retry_backoff_seconds,
                "timeout_seconds": self.build.timeout_seconds,
            },
            "review": {
                "binary": self.review.binary,
                "max_retries": self.review.max_retries,
                "retry_backoff_seconds": self.review.retry_backoff_seconds,
                "timeout_seconds": self.review.timeout_seconds,
            },
            "notify": {
                "endpoint": self.notify.endpoint,
                "timeout_seconds": self.notify.timeout_seconds,
                "dedupe_ttl_seconds": self.notify.dedupe_ttl_seconds,
                "dedupe_max_entries": self.notify.dedupe_max_entries,
            },
            "git": {
                "remote": self.git.remote,
            },
            "logging": {
                "level": self.logging.level,
            },
            "checks": {name: override.to_dict() for name, override in self.checks.items()},
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PorchConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["paths", "workflow", "build", "review", "notify", "git", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for name, override in data["checks"].items():
        lines.append(f"[checks.{json.dumps(name)}]")
        for key, value in override.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PorchConfig:
    if not path.exists():
        return PorchConfig.default()
    return PorchConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PorchConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
