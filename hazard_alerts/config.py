"""
Process settings, loaded from HAZARD_ALERTS_* environment variables.

Engine tuning is an EngineConfig; this module only decides where its values
come from.
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hazard_alerts.models.engine import CooldownKeyMode, EngineConfig
from hazard_alerts.models.rule import Severity


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HAZARD_ALERTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    db_path: str = ":memory:"
    log_level: str = "INFO"
    log_json: bool = False
    autostart: bool = False

    evaluation_interval_seconds: float = Field(default=60, gt=0)
    rule_refresh_interval_seconds: float = Field(default=300, gt=0)
    rule_timeout_seconds: float = Field(default=10, gt=0)
    max_concurrent_evaluations: int = Field(default=4, ge=1)
    cooldown_key: CooldownKeyMode = CooldownKeyMode.RULE
    escalation_roles: List[str] = ["admin"]
    sms_severities: List[Severity] = [Severity.CRITICAL]

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            evaluation_interval_seconds=self.evaluation_interval_seconds,
            rule_refresh_interval_seconds=self.rule_refresh_interval_seconds,
            rule_timeout_seconds=self.rule_timeout_seconds,
            max_concurrent_evaluations=self.max_concurrent_evaluations,
            cooldown_key=self.cooldown_key,
            escalation_roles=self.escalation_roles,
            sms_severities=self.sms_severities,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
