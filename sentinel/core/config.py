"""Pydantic settings loaded from YAML/JSON with a SENTINEL_ environment overlay."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic_settings import (
    BaseSettings,
    EnvSettingsSource,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)

from sentinel.core.exceptions import ConfigError
from sentinel.core.types import Severity, is_known_event_type

ENV_PREFIX = "SENTINEL_"

_DISCOVERY_PATHS = (Path("sentinel.yaml"), Path("sentinel.json"))

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def parse_duration(value: Any) -> Any:
    """Accept seconds as a number or a Go-style string such as ``1h30m``."""
    if isinstance(value, timedelta) or value is None:
        return value
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '3s'")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty duration")
        try:
            return timedelta(seconds=float(text))
        except ValueError:
            pass
        if text.startswith("P"):
            return value  # ISO 8601, let pydantic handle it
        pos = 0
        total = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos != len(text):
            raise ValueError(f"invalid duration {value!r}")
        return timedelta(seconds=total)
    return value


Duration = Annotated[timedelta, BeforeValidator(parse_duration)]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SourceConfig(_Frozen):
    """How snapshots are obtained: wait on the IPN bus or plain polling."""

    mode: str = "realtime"


class DetectorToggle(_Frozen):
    enabled: bool = True


class PolicyConfig(_Frozen):
    """Noise control applied between detection and delivery."""

    debounce_window: Duration = timedelta(seconds=3)
    suppression_window: Duration = timedelta(0)
    rate_limit_per_min: int = 120
    rate_limit_per_type: dict[str, int] = Field(default_factory=dict)
    batch_size: int = 20
    notify_on_first_cycle: bool = False


class RouteConfig(_Frozen):
    event_types: list[str] = Field(default_factory=list)
    severities: list[Severity] = Field(default_factory=list)
    sinks: list[str] = Field(default_factory=list)

    @field_validator("severities", mode="before")
    @classmethod
    def _parse_severities(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [Severity.parse(v) for v in value]
        return value


class SinkConfig(_Frozen):
    name: str
    type: str = "stdout"
    url: str = ""


def _default_routes() -> list[RouteConfig]:
    return [RouteConfig(event_types=["*"], sinks=["stdout-debug"])]


def _default_sinks() -> list[SinkConfig]:
    return [
        SinkConfig(name="stdout-debug", type="stdout"),
        SinkConfig(name="webhook-primary", type="webhook", url="${SLACK_WEBHOOK_URL}"),
    ]


class NotifierConfig(_Frozen):
    """Routing, sinks and delivery retry settings."""

    idempotency_key_ttl: Duration = timedelta(hours=24)
    delivery_max_attempts: int = 3
    delivery_backoff_min: Duration = timedelta(milliseconds=500)
    delivery_backoff_max: Duration = timedelta(seconds=5)
    delivery_timeout: Duration = timedelta(seconds=10)
    routes: list[RouteConfig] = Field(default_factory=_default_routes)
    sinks: list[SinkConfig] = Field(default_factory=_default_sinks)


class StateConfig(_Frozen):
    path: str = ".sentinel/state.json"
    idempotency_key_ttl: Duration | None = None


class OutputConfig(_Frozen):
    log_format: str = "pretty"
    log_level: str = "info"
    no_color: bool = False


class TSNetConfig(_Frozen):
    """Tailnet onboarding via a tailscaled LocalAPI socket."""

    hostname: str = "sentinel"
    state_dir: str = ".sentinel/tsnet"
    socket: str = ""
    auth_key: SecretStr = SecretStr("")
    auth_key_source: str = ""
    login_mode: str = "auto"
    allow_interactive_fallback: bool = False
    login_timeout: Duration = timedelta(minutes=5)

    @property
    def socket_path(self) -> Path:
        if self.socket:
            return Path(self.socket)
        return Path(self.state_dir) / "tailscaled.sock"


def _default_detectors() -> dict[str, DetectorToggle]:
    return {
        "presence": DetectorToggle(),
        "peer_changes": DetectorToggle(),
        "runtime": DetectorToggle(),
    }


class Settings(BaseSettings):
    """Root settings container.

    Environment variables map to fields as ``SENTINEL_<SECTION>_<KEY>``, e.g.
    ``SENTINEL_POLICY_BATCH_SIZE``. Only ``load_settings`` layers them in;
    constructing ``Settings`` directly uses the given values and defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="_",
        env_nested_max_split=1,
        frozen=True,
        extra="forbid",
    )

    poll_interval: Duration = timedelta(seconds=10)
    poll_jitter: Duration = timedelta(seconds=1)
    poll_backoff_min: Duration = timedelta(milliseconds=500)
    poll_backoff_max: Duration = timedelta(seconds=30)
    source: SourceConfig = SourceConfig()
    detectors: dict[str, DetectorToggle] = Field(default_factory=_default_detectors)
    detector_order: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["presence", "peer_changes", "runtime"]
    )
    policy: PolicyConfig = PolicyConfig()
    notifier: NotifierConfig = NotifierConfig()
    state: StateConfig = StateConfig()
    output: OutputConfig = OutputConfig()
    tsnet: TSNetConfig = TSNetConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # load_settings merges the file and the environment itself
        return (init_settings,)

    @field_validator("detector_order", mode="before")
    @classmethod
    def _split_order(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @field_validator("detectors", mode="before")
    @classmethod
    def _fold_toggles(cls, value: Any) -> Any:
        """Fill in the built-in detectors and fold ``<name>_enabled`` keys.

        ``SENTINEL_DETECTORS_RUNTIME_ENABLED`` reaches the model as
        ``{"runtime_enabled": ...}`` since nesting stops one level down.
        """
        if not isinstance(value, dict):
            return value
        folded: dict[str, Any] = {name: {} for name in _default_detectors()}
        flat: dict[str, Any] = {}
        for key, entry in value.items():
            if isinstance(entry, DetectorToggle):
                entry = entry.model_dump()
            if isinstance(entry, dict):
                folded[key] = {**folded.get(key, {}), **entry}
            elif key.endswith("_enabled"):
                flat[key.removesuffix("_enabled")] = entry
            else:
                folded[key] = entry
        for name, enabled in flat.items():
            current = folded.get(name)
            folded[name] = {**(current if isinstance(current, dict) else {}), "enabled": enabled}
        return folded

    @property
    def idempotency_key_ttl(self) -> timedelta:
        """State-level TTL wins; the notifier's is the fallback."""
        if self.state.idempotency_key_ttl is not None:
            return self.state.idempotency_key_ttl
        return self.notifier.idempotency_key_ttl


# ── Loading ─────────────────────────────────────────────────────


def resolve_config_path(
    path: str | Path | None, environ: Mapping[str, str]
) -> Path | None:
    """Explicit path, then SENTINEL_CONFIG_PATH, then sentinel.yaml/json in cwd."""
    if path:
        return Path(path)
    env_path = environ.get(f"{ENV_PREFIX}CONFIG_PATH", "")
    if env_path:
        return Path(env_path)
    for candidate in _DISCOVERY_PATHS:
        if candidate.exists():
            return candidate
    return None


def _read_file(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"read config: {config_path} does not exist")
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"read config: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"read config: {config_path} must contain a mapping")
    return raw


class _EnvironSource(EnvSettingsSource):
    """The Settings env source, reading an explicit mapping."""

    def __init__(self, settings_cls: type[BaseSettings], environ: Mapping[str, str]) -> None:
        self._environ = environ
        super().__init__(settings_cls)

    def _load_env_vars(self) -> Mapping[str, str | None]:
        if self.case_sensitive:
            return dict(self._environ)
        return {k.lower(): v for k, v in self._environ.items()}


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _expand_placeholders(value: str, environ: Mapping[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: environ.get(m.group(1), ""), value.strip())


def _finalize(settings: Settings, environ: Mapping[str, str]) -> Settings:
    sinks = [
        sink.model_copy(update={"url": _expand_placeholders(sink.url, environ)})
        if "${" in sink.url
        else sink
        for sink in settings.notifier.sinks
    ]
    notifier = settings.notifier.model_copy(update={"sinks": sinks})

    tsnet = settings.tsnet
    if tsnet.auth_key.get_secret_value():
        tsnet = tsnet.model_copy(update={"auth_key_source": "config"})
    else:
        for env_key in (f"{ENV_PREFIX}TAILSCALE_AUTH_KEY", "TS_AUTHKEY"):
            if environ.get(env_key):
                tsnet = tsnet.model_copy(
                    update={
                        "auth_key": SecretStr(environ[env_key]),
                        "auth_key_source": env_key,
                    }
                )
                break

    return settings.model_copy(update={"notifier": notifier, "tsnet": tsnet})


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load, overlay and validate settings.

    Args:
        path: Path to a YAML or JSON config. When omitted, SENTINEL_CONFIG_PATH
            and then sentinel.yaml / sentinel.json in the working directory are
            tried; with none present the defaults are used.
        environ: Environment mapping. Defaults to ``os.environ``; this is the
            only place the environment is read.

    Returns:
        A frozen, validated Settings instance.

    Raises:
        ConfigError: The file is unreadable or the result fails validation.
    """
    env = os.environ if environ is None else environ
    config_path = resolve_config_path(path, env)

    data: dict[str, Any] = _read_file(config_path) if config_path else {}

    try:
        data = _deep_merge(data, _EnvironSource(Settings, env)())
        settings = Settings(**data)
    except (ValidationError, SettingsError) as exc:
        raise ConfigError(f"invalid config: {exc}") from exc

    settings = _finalize(settings, env)
    validate_settings(settings)
    return settings


# ── Validation ──────────────────────────────────────────────────

_LOG_FORMATS = ("pretty", "json")
_LOGIN_MODES = ("", "auto", "auth_key", "interactive")
_SOURCE_MODES = ("", "realtime", "poll")
SINK_TYPES = ("stdout", "webhook", "discord", "debug")


def validate_settings(settings: Settings) -> None:
    """Cross-field checks pydantic's per-field validation can't express.

    Raises:
        ConfigError: On the first violation found.
    """
    if settings.poll_interval <= timedelta(0):
        raise ConfigError("poll_interval must be > 0")
    if settings.poll_jitter < timedelta(0):
        raise ConfigError("poll_jitter must be >= 0")
    if settings.poll_backoff_min <= timedelta(0):
        raise ConfigError("poll_backoff_min must be > 0")
    if settings.poll_backoff_max < settings.poll_backoff_min:
        raise ConfigError("poll_backoff_max must be >= poll_backoff_min")

    policy = settings.policy
    if policy.batch_size <= 0:
        raise ConfigError("policy.batch_size must be > 0")
    if policy.rate_limit_per_min < 0:
        raise ConfigError("policy.rate_limit_per_min must be >= 0")
    if policy.debounce_window < timedelta(0) or policy.suppression_window < timedelta(0):
        raise ConfigError("policy windows must be >= 0")
    for event_type, limit in policy.rate_limit_per_type.items():
        if not is_known_event_type(event_type):
            raise ConfigError(
                f"policy.rate_limit_per_type has unknown event type {event_type!r}"
            )
        if limit < 0:
            raise ConfigError(f"policy.rate_limit_per_type[{event_type}] must be >= 0")

    if not settings.detector_order:
        raise ConfigError("detector_order must not be empty")
    if len(set(settings.detector_order)) != len(settings.detector_order):
        raise ConfigError("detector_order must not repeat a detector")
    for name in settings.detector_order:
        if name not in settings.detectors:
            raise ConfigError(f"detector_order references unknown detector {name!r}")

    if not settings.state.path.strip():
        raise ConfigError("state.path is required")
    if settings.output.log_format.lower() not in _LOG_FORMATS:
        raise ConfigError("output.log_format must be pretty or json")

    tsnet = settings.tsnet
    if not tsnet.state_dir.strip():
        raise ConfigError("tsnet.state_dir is required")
    if tsnet.login_mode.strip().lower() not in _LOGIN_MODES:
        raise ConfigError("tsnet.login_mode must be auto, auth_key, or interactive")
    if tsnet.login_timeout <= timedelta(0):
        raise ConfigError("tsnet.login_timeout must be > 0")
    if settings.source.mode.strip().lower() not in _SOURCE_MODES:
        raise ConfigError("source.mode must be realtime or poll")

    notifier = settings.notifier
    if notifier.delivery_max_attempts < 1:
        raise ConfigError("notifier.delivery_max_attempts must be >= 1")

    sink_names: set[str] = set()
    for i, sink in enumerate(notifier.sinks):
        if not sink.name.strip():
            raise ConfigError(f"notifier.sinks[{i}].name must not be empty")
        if sink.name in sink_names:
            raise ConfigError(f"notifier.sinks[{i}].name {sink.name!r} is duplicated")
        sink_names.add(sink.name)
        sink_type = sink.type.strip().lower()
        if sink_type not in ("", *SINK_TYPES):
            raise ConfigError(
                f"notifier.sinks[{i}].type has unsupported value {sink.type!r}"
            )
        if sink_type == "discord" and not sink.url.strip():
            raise ConfigError(f"notifier.sinks[{i}].url is required for discord sink")

    for i, route in enumerate(notifier.routes):
        if not route.event_types:
            raise ConfigError(f"notifier.routes[{i}].event_types must not be empty")
        for j, event_type in enumerate(route.event_types):
            et = event_type.strip()
            if not et:
                raise ConfigError(
                    f"notifier.routes[{i}].event_types[{j}] must not be empty"
                )
            if et != "*" and not is_known_event_type(et):
                raise ConfigError(
                    f"notifier.routes[{i}].event_types[{j}] has unknown value {et!r}"
                )
        for sink_name in route.sinks:
            if sink_name not in sink_names:
                raise ConfigError(
                    f"notifier.routes[{i}] references unknown sink {sink_name!r}"
                )
