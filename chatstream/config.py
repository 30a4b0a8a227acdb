"""
Configuration for chatstream.

Sources are layered as defaults, then the YAML file, then a named profile
from that file, then ``CHATSTREAM_*`` environment variables, then explicit
overrides from the command line.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from chatstream.types import ConfigurationError


@dataclass
class ProviderConfig:
    """
    Settings for one provider service.

    ``None`` means "use the provider default" -- adapters fill those in
    without touching this object.
    """

    name: str = "custom"
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    api_key_env: str = "CHATSTREAM_API_KEY"
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_seconds: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)
    custom_params: dict[str, Any] = field(default_factory=dict)
    mock_mode: bool = False
    mock_delay: float = 0.05
    max_retries: int = 3
    retry_delay: float = 1.0


@dataclass
class AgentSection:
    name: str = "AI Assistant"
    system_prompt: str = "You are a helpful AI assistant."


@dataclass
class MachineSection:
    max_thinking_buffer: int = 10_000
    max_tool_buffer: int = 5_000
    auto_clear_buffer: bool = True
    max_messages: int = 100
    max_thinking_chunks: int = 50
    max_active_tools: int = 10
    history_window: int = 10


@dataclass
class LoggingSection:
    level: str = "WARNING"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class ChatStreamConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    agent: AgentSection = field(default_factory=AgentSection)
    machine: MachineSection = field(default_factory=MachineSection)
    logging: LoggingSection = field(default_factory=LoggingSection)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def provider_config(self) -> ProviderConfig:
        """
        Return a copy of the provider section with the API key resolved.

        An explicit ``api_key`` wins; otherwise the variable named by
        ``api_key_env`` is read.
        """
        cfg = ProviderConfig(**asdict(self.provider))
        if not cfg.api_key and cfg.api_key_env:
            cfg.api_key = os.environ.get(cfg.api_key_env) or None
        return cfg

    def to_dict(self) -> dict:
        d = asdict(self)
        if d["provider"].get("api_key"):
            d["provider"]["api_key"] = "***"
        return d


def _merged(base: dict, overlay: dict) -> dict:
    out = dict(base)
    for key, value in overlay.items():
        current = out.get(key)
        out[key] = _merged(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return out


def _parse_env(raw: str, kind: type) -> Any:
    if kind is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
        raise ValueError(f"expected a boolean, got {raw!r}")
    return kind(raw)


def _section(cls: type, raw: Any, name: str) -> Any:
    """Instantiate a section dataclass; keys it does not declare are dropped."""
    if not isinstance(raw, dict):
        raise ConfigurationError(f"'{name}' section must be a mapping")
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def _assign(cfg: ChatStreamConfig, dotpath: str, value: Any) -> None:
    section, _, attr = dotpath.partition(".")
    setattr(getattr(cfg, section), attr, value)


def _read_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data


_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off", ""})

# env var -> (section.field, type)
_ENV_MAP: dict[str, tuple[str, type]] = {
    "CHATSTREAM_PROVIDER":          ("provider.name", str),
    "CHATSTREAM_MODEL":             ("provider.model", str),
    "CHATSTREAM_BASE_URL":          ("provider.base_url", str),
    "CHATSTREAM_API_KEY_ENV":       ("provider.api_key_env", str),
    "CHATSTREAM_TEMPERATURE":       ("provider.temperature", float),
    "CHATSTREAM_MAX_TOKENS":        ("provider.max_tokens", int),
    "CHATSTREAM_TIMEOUT":           ("provider.timeout_seconds", float),
    "CHATSTREAM_MOCK_MODE":         ("provider.mock_mode", bool),
    "CHATSTREAM_MOCK_DELAY":        ("provider.mock_delay", float),
    "CHATSTREAM_MAX_RETRIES":       ("provider.max_retries", int),
    "CHATSTREAM_SYSTEM_PROMPT":     ("agent.system_prompt", str),
    "CHATSTREAM_THINKING_BUFFER":   ("machine.max_thinking_buffer", int),
    "CHATSTREAM_TOOL_BUFFER":       ("machine.max_tool_buffer", int),
    "CHATSTREAM_LOG_LEVEL":         ("logging.level", str),
}

_SEARCH_PATHS = (
    Path("chatstream.yaml"),
    Path("chatstream.yml"),
    Path("~/.config/chatstream/config.yaml"),
)


def find_config_file() -> Path | None:
    for candidate in _SEARCH_PATHS:
        path = candidate.expanduser()
        if path.is_file():
            return path.resolve()
    return None


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ChatStreamConfig:
    """
    Layer defaults, the YAML file, the selected profile, ``CHATSTREAM_*``
    variables and finally *cli_overrides* (``{"provider.model": ...}``; a
    ``None`` value leaves the field alone).

    A missing file is not an error. Unparseable YAML, a non-mapping section
    or an env value of the wrong type raises ConfigurationError.
    """
    raw: dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path).expanduser()
        if path.is_file():
            raw = _read_yaml(path)

    profiles = raw.get("profiles") or {}
    if profile and isinstance(profiles, dict) and profiles.get(profile):
        raw = _merged(raw, profiles[profile])

    cfg = ChatStreamConfig(
        provider=_section(ProviderConfig, raw.get("provider") or {}, "provider"),
        agent=_section(AgentSection, raw.get("agent") or {}, "agent"),
        machine=_section(MachineSection, raw.get("machine") or {}, "machine"),
        logging=_section(LoggingSection, raw.get("logging") or {}, "logging"),
        profiles=profiles if isinstance(profiles, dict) else {},
    )

    for env_var, (dotpath, kind) in _ENV_MAP.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        try:
            _assign(cfg, dotpath, _parse_env(value, kind))
        except ValueError as exc:
            raise ConfigurationError(f"{env_var}: {exc}") from exc

    for dotpath, value in (cli_overrides or {}).items():
        if value is not None:
            _assign(cfg, dotpath, value)

    return cfg
