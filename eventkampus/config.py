"""Configuration management for the EventKampus service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger("eventkampus.config")

_ENV_PREFIX = "EVENTKAMPUS_"
_MIN_SECRET_LENGTH = 32
_DEFAULT_CORS_ORIGINS = ("http://localhost:5173", "http://localhost:5174")


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_origins(value: object) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in items if item.strip())


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "eventkampus.sqlite3").resolve(strict=False)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API, token signing and the payment gateway."""

    db_path: Path = field(default_factory=lambda: resolve_database_path(None))
    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    access_token_minutes: int = 60
    refresh_token_days: int = 7
    midtrans_server_key: str = ""
    midtrans_is_production: bool = False
    gateway_timeout: float = 10.0
    db_timeout: float = 15.0
    cors_origins: Tuple[str, ...] = _DEFAULT_CORS_ORIGINS
    auth_rate_limit: int = 5
    auth_rate_window: int = 900
    general_rate_limit: int = 100
    general_rate_window: int = 900

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from raw dictionary data, ignoring unknown keys."""

        known = {item.name for item in fields(Settings)}
        unknown = set(data.keys()) - known
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", ", ".join(sorted(unknown)))

        values: Dict[str, object] = {}
        if data.get("db_path"):
            raw_path = Path(str(data["db_path"])).expanduser()
            if not raw_path.is_absolute() and base_path is not None:
                raw_path = base_path / raw_path
            values["db_path"] = raw_path.resolve(strict=False)
        for name in ("jwt_secret", "jwt_refresh_secret", "midtrans_server_key"):
            if data.get(name) is not None:
                values[name] = str(data[name])
        for name in (
            "access_token_minutes",
            "refresh_token_days",
            "auth_rate_limit",
            "auth_rate_window",
            "general_rate_limit",
            "general_rate_window",
        ):
            if data.get(name) is not None:
                values[name] = int(data[name])  # type: ignore[arg-type]
        for name in ("gateway_timeout", "db_timeout"):
            if data.get(name) is not None:
                values[name] = float(data[name])  # type: ignore[arg-type]
        if data.get("midtrans_is_production") is not None:
            raw_flag = data["midtrans_is_production"]
            values["midtrans_is_production"] = (
                raw_flag if isinstance(raw_flag, bool) else _env_flag(str(raw_flag))
            )
        if data.get("cors_origins") is not None:
            values["cors_origins"] = _split_origins(data["cors_origins"])

        return Settings(**values)  # type: ignore[arg-type]

    def weak_secrets(self) -> bool:
        return (
            len(self.jwt_secret) < _MIN_SECRET_LENGTH
            or len(self.jwt_refresh_secret) < _MIN_SECRET_LENGTH
        )


def _read_environment(environ: Mapping[str, str]) -> Dict[str, object]:
    values: Dict[str, object] = {}
    for item in fields(Settings):
        raw = environ.get(_ENV_PREFIX + item.name.upper())
        if raw is not None and raw.strip() != "":
            values[item.name] = raw.strip()
    return values


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from an optional YAML file overlaid with environment variables."""

    env = os.environ if environ is None else environ
    raw: Dict[str, object] = {}
    base_path: Path | None = None

    path = config_path or resolve_config_path(env.get(_ENV_PREFIX + "CONFIG"))
    if path is not None and path.exists():
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")
        raw.update(loaded)
        base_path = path.parent

    raw.update(_read_environment(env))
    settings = Settings.from_dict(raw, base_path=base_path)
    if settings.weak_secrets():
        logger.warning(
            "JWT secrets are missing or shorter than %s characters; set %sJWT_SECRET and"
            " %sJWT_REFRESH_SECRET before running in production.",
            _MIN_SECRET_LENGTH,
            _ENV_PREFIX,
            _ENV_PREFIX,
        )
    return settings


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the path to the optional configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    candidate = (Path(__file__).resolve().parent.parent / "config" / "eventkampus.yaml").resolve(strict=False)
    return candidate if candidate.exists() else None


__all__ = ["Settings", "load_settings", "resolve_config_path", "resolve_database_path"]
