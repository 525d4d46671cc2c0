from __future__ import annotations

import json
import shlex
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

RunnerName = Literal["claude", "echo"]
PromptMode = Literal["auto", "interactive", "headless"]

CONFIG_FILE_NAME = "foreman.toml"
RUNNER_NAMES = ("claude", "echo")
ROLE_NAMES = ("lead", "task", "reviewer", "summarize")


class ConfigError(RuntimeError):
    """Raised when foreman.toml cannot be interpreted."""


@dataclass(slots=True)
class PathsConfig:
    artifact_root: str = ".foreman"


@dataclass(slots=True)
class WorktreeConfig:
    base_branch: str = "main"
    worktrees_dir: str = ".worktrees"
    branch_prefix: str = "foreman"
    after_create: list[str] = field(default_factory=list)
    before_cleanup: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RunnersConfig:
    default: RunnerName = "claude"
    lead: RunnerName | None = None
    task: RunnerName | None = None
    reviewer: RunnerName | None = None
    summarize: RunnerName | None = None
    claude_binary: str = "claude"
    extra_args: list[str] = field(default_factory=list)
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5

    def for_role(self, role: str) -> RunnerName:
        override = getattr(self, role, None)
        return override or self.default


@dataclass(slots=True)
class QualityCheck:
    name: str
    cmd: list[str]
    timeout_seconds: float | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class QualityConfig:
    checks: list[QualityCheck] = field(default_factory=list)


@dataclass(slots=True)
class IntegrationConfig:
    checks: list[QualityCheck] = field(default_factory=list)
    use_quality_adapter: bool = True


@dataclass(slots=True)
class PromptConfig:
    mode: PromptMode = "auto"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


def _section(cls: type, data: Any, name: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section [{name}] must be a table.")
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in [{name}]: {', '.join(unknown)}")
    return cls(**data)


def _parse_checks(raw: Any, section: str) -> list[QualityCheck]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"[{section}].checks must be a list of tables.")
    checks: list[QualityCheck] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"[{section}].checks[{index}] must be a table.")
        name = item.get("name")
        cmd = item.get("cmd")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError(f"[{section}].checks[{index}].name must be a non-empty string.")
        if isinstance(cmd, str):
            try:
                cmd = shlex.split(cmd)
            except ValueError as exc:
                raise ConfigError(f"[{section}].checks[{index}].cmd: {exc}") from exc
        if not isinstance(cmd, list) or not cmd or not all(isinstance(p, str) for p in cmd):
            raise ConfigError(f"[{section}].checks[{index}].cmd must be a list of strings.")
        timeout = item.get("timeout_seconds")
        env = item.get("env") or {}
        if not isinstance(env, dict):
            raise ConfigError(f"[{section}].checks[{index}].env must be a table.")
        checks.append(
            QualityCheck(
                name=name.strip(),
                cmd=list(cmd),
                timeout_seconds=float(timeout) if timeout is not None else None,
                env={str(k): str(v) for k, v in env.items()},
            )
        )
    return checks


def _check_to_dict(check: QualityCheck) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": check.name, "cmd": list(check.cmd)}
    if check.timeout_seconds is not None:
        payload["timeout_seconds"] = check.timeout_seconds
    if check.env:
        payload["env"] = dict(check.env)
    return payload


@dataclass(slots=True)
class ForemanConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    runners: RunnersConfig = field(default_factory=RunnersConfig)
    quality: QualityConfig | None = None
    integration: IntegrationConfig | None = None
    prompt: PromptConfig = field(default_factory=PromptConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        known = {"paths", "worktree", "runners", "quality", "integration", "prompt", "logging"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config sections: {', '.join(unknown)}")

        runners = _section(RunnersConfig, data.get("runners"), "runners")
        for role in ("default", *ROLE_NAMES):
            value = getattr(runners, role)
            if value is not None and value not in RUNNER_NAMES:
                raise ConfigError(f"Unknown runner '{value}' for [runners].{role}")

        quality = None
        if "quality" in data:
            raw_quality = dict(data["quality"] or {})
            quality = QualityConfig(checks=_parse_checks(raw_quality.pop("checks", None), "quality"))
            if raw_quality:
                raise ConfigError(f"Unknown keys in [quality]: {', '.join(sorted(raw_quality))}")
            if not quality.checks:
                quality = None

        integration = None
        if "integration" in data:
            raw_integration = dict(data["integration"] or {})
            checks = _parse_checks(raw_integration.pop("checks", None), "integration")
            use_quality_adapter = bool(raw_integration.pop("use_quality_adapter", True))
            if raw_integration:
                raise ConfigError(
                    f"Unknown keys in [integration]: {', '.join(sorted(raw_integration))}"
                )
            integration = IntegrationConfig(checks=checks, use_quality_adapter=use_quality_adapter)

        prompt = _section(PromptConfig, data.get("prompt"), "prompt")
        if prompt.mode not in ("auto", "interactive", "headless"):
            raise ConfigError(f"Unknown prompt mode: {prompt.mode}")

        return cls(
            paths=_section(PathsConfig, data.get("paths"), "paths"),
            worktree=_section(WorktreeConfig, data.get("worktree"), "worktree"),
            runners=runners,
            quality=quality,
            integration=integration,
            prompt=prompt,
            logging=_section(LoggingConfig, data.get("logging"), "logging"),
        )

    def to_dict(self) -> dict:
        runners: dict[str, Any] = {"default": self.runners.default}
        for role in ROLE_NAMES:
            value = getattr(self.runners, role)
            if value:
                runners[role] = value
        runners.update(
            {
                "claude_binary": self.runners.claude_binary,
                "extra_args": list(self.runners.extra_args),
                "max_retries": self.runners.max_retries,
                "retry_backoff_seconds": self.runners.retry_backoff_seconds,
            }
        )
        payload: dict[str, Any] = {
            "paths": {"artifact_root": self.paths.artifact_root},
            "worktree": {
                "base_branch": self.worktree.base_branch,
                "worktrees_dir": self.worktree.worktrees_dir,
                "branch_prefix": self.worktree.branch_prefix,
                "after_create": list(self.worktree.after_create),
                "before_cleanup": list(self.worktree.before_cleanup),
            },
            "runners": runners,
            "prompt": {"mode": self.prompt.mode},
            "logging": {"level": self.logging.level},
        }
        if self.quality is not None:
            payload["quality"] = {"checks": [_check_to_dict(c) for c in self.quality.checks]}
        if self.integration is not None:
            payload["integration"] = {
                "checks": [_check_to_dict(c) for c in self.integration.checks],
                "use_quality_adapter": self.integration.use_quality_adapter,
            }
        return payload


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
    if isinstance(value, dict):
        inner = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + inner + " }" if inner else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["paths", "worktree", "runners", "quality", "integration", "prompt", "logging"]
    for section in section_order:
        if section not in data:
            continue
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if key == "checks":
                lines.append("checks = [")
                for check in value:
                    lines.append(f"    {_toml_value(check)},")
                lines.append("]")
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return ForemanConfig.from_dict(data)


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def find_config_path(start_dir: Path) -> Path | None:
    current = start_dir.resolve()
    for candidate in (current, *current.parents):
        config_path = candidate / CONFIG_FILE_NAME
        if config_path.is_file():
            return config_path
    return None
