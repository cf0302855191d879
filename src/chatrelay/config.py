import os

from pydantic import BaseModel, Field

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

DEFAULT_CONFIG_DIR = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), "config"
)
DEFAULT_METRICS_DIR = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), "metrics"
)


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_var_as_int(name: str, *, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    config_dir: str = DEFAULT_CONFIG_DIR
    metrics_dir: str = DEFAULT_METRICS_DIR
    stream_timeout_s: float = Field(default=60.0, gt=0)
    cancel_poll_interval_s: float = Field(default=1.0, gt=0)
    microbatch_window_s: float = Field(default=0.0, ge=0)
    history_limit: int = Field(default=5, ge=0)
    session_ttl_s: int = Field(default=3600, gt=0)
    conversation_ttl_days: int = Field(default=30, gt=0)
    transcript_db: str | None = None
    namer_enabled: bool = True
    namer_model: str = "gpt-4o-mini"
    cors_allow_origins: list[str] = Field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            config_dir=os.environ.get("CHATRELAY_CONFIG_DIR", DEFAULT_CONFIG_DIR),
            metrics_dir=os.environ.get("CHATRELAY_METRICS_DIR", DEFAULT_METRICS_DIR),
            stream_timeout_s=_env_var_as_float("CHATRELAY_STREAM_TIMEOUT_S", default=60.0) or 60.0,
            cancel_poll_interval_s=_env_var_as_float(
                "CHATRELAY_CANCEL_POLL_INTERVAL_S", default=1.0
            )
            or 1.0,
            microbatch_window_s=_env_var_as_float("CHATRELAY_MICROBATCH_MS", default=0.0) / 1000.0,
            history_limit=_env_var_as_int("CHATRELAY_HISTORY_LIMIT", default=5),
            session_ttl_s=_env_var_as_int("CHATRELAY_SESSION_TTL_S", default=3600) or 3600,
            conversation_ttl_days=_env_var_as_int("CHATRELAY_CONVERSATION_TTL_DAYS", default=30)
            or 30,
            transcript_db=os.environ.get("CHATRELAY_TRANSCRIPT_DB") or None,
            namer_enabled=_env_var_as_bool("CHATRELAY_NAMER_ENABLED", default=True),
            namer_model=os.environ.get("CHATRELAY_NAMER_MODEL", "gpt-4o-mini"),
            cors_allow_origins=_parse_env_list(os.environ.get("CHATRELAY_CORS_ALLOW_ORIGINS", "")),
        )
