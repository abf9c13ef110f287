"""
Engine settings

Values come from the environment (a .env file is loaded first) and can be
overridden by a YAML settings file.
"""
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class EngineSettings:
    """Runtime configuration of the automation engine"""
    database_url: str = "sqlite+aiosqlite:///./clinic_automation.db"
    tick_interval_seconds: float = 60
    trigger_lookback_minutes: int = 5
    appointment_duration_minutes: int = 60
    retry_interval_seconds: float = 300
    max_attempts: int = 3
    drain_batch_size: int = 100
    notifier_timeout_seconds: float = 30
    default_duplicate_prevention_days: int = 30
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    jwt_secret_key: str = "change-me"
    disable_auth: bool = False
    log_level: str = "INFO"
    crm_fixtures_path: Optional[str] = None

    def __post_init__(self):
        # completed-appointment detection only looks back this far each tick
        if self.trigger_lookback_minutes * 60 < self.tick_interval_seconds:
            logger.warning(
                f"trigger_lookback_minutes ({self.trigger_lookback_minutes}) is shorter than "
                f"tick_interval_seconds ({self.tick_interval_seconds}s); appointments completing "
                f"between ticks will be missed"
            )

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineSettings":
        """Read settings from environment variables"""
        if dotenv:
            load_dotenv()

        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            tick_interval_seconds=float(os.getenv("TICK_INTERVAL_SECONDS", defaults.tick_interval_seconds)),
            trigger_lookback_minutes=int(os.getenv("TRIGGER_LOOKBACK_MINUTES", defaults.trigger_lookback_minutes)),
            appointment_duration_minutes=int(
                os.getenv("APPOINTMENT_DURATION_MINUTES", defaults.appointment_duration_minutes)
            ),
            retry_interval_seconds=float(os.getenv("RETRY_INTERVAL_SECONDS", defaults.retry_interval_seconds)),
            max_attempts=int(os.getenv("MAX_ATTEMPTS", defaults.max_attempts)),
            drain_batch_size=int(os.getenv("DRAIN_BATCH_SIZE", defaults.drain_batch_size)),
            notifier_timeout_seconds=float(
                os.getenv("NOTIFIER_TIMEOUT_SECONDS", defaults.notifier_timeout_seconds)
            ),
            default_duplicate_prevention_days=int(
                os.getenv("DEFAULT_DUPLICATE_PREVENTION_DAYS", defaults.default_duplicate_prevention_days)
            ),
            api_host=os.getenv("API_HOST", defaults.api_host),
            api_port=int(os.getenv("API_PORT", defaults.api_port)),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", defaults.jwt_secret_key),
            disable_auth=_env_bool("DISABLE_AUTH"),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            crm_fixtures_path=os.getenv("CRM_FIXTURES") or None,
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path], base: "EngineSettings" = None) -> "EngineSettings":
        """Overlay a YAML file (keys are field names) on ``base``"""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        settings = base or cls.from_env()
        return settings.merge(data.get("engine", data))

    def merge(self, overrides: Dict[str, Any]) -> "EngineSettings":
        known = {f.name: f.type for f in fields(self)}
        values = self.to_dict()
        for key, value in overrides.items():
            key = key.lower()
            if key not in known:
                logger.warning(f"Ignoring unknown setting '{key}'")
                continue
            values[key] = value
        return EngineSettings(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def safe_dict(self) -> Dict[str, Any]:
        """Settings without secrets, for diagnostics"""
        data = self.to_dict()
        data["jwt_secret_key"] = "***"
        return data


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
