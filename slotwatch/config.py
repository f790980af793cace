"""
Config loading via Pydantic v2 and python-dotenv.

Загрузка конфигурации из .env и базовая валидация.
"""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


BASE_DIR = Path(__file__).resolve().parent.parent
# В Docker можно задать DATA_DIR=/app/data и смонтировать volume, тогда состояние и куки сохранятся
DATA_DIR = Path(os.environ.get("DATA_DIR", str(BASE_DIR / "data")))
ENV_PATH = BASE_DIR / ".env"

# Явно загружаем переменные окружения из .env, если файл существует
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


class BotConfig(BaseModel):
    token: str
    admin_chat_id: int


class SiteConfig(BaseModel):
    base_url: str = "https://driverpracticaltest.dvsa.gov.uk"
    login_path: str = "/login"
    change_path: str = "/manage-change-cancel"

    @property
    def login_url(self) -> str:
        return self.base_url.rstrip("/") + self.login_path

    @property
    def change_url(self) -> str:
        return self.base_url.rstrip("/") + self.change_path


class BrowserConfig(BaseModel):
    cdp_url: str = ""
    launch_cdp: bool = False
    headless: bool = False
    max_lifetime_seconds: int = Field(default=3600, ge=60)


class MonitorDefaults(BaseModel):
    check_interval: int = Field(default=30, ge=5)
    check_interval_variation: int = Field(default=0, ge=0)
    adaptive_timing: bool = False
    risk_refresh_seconds: int = Field(default=60, ge=5)
    check_timeout: float = Field(default=120.0, gt=0)
    booking_timeout: float = Field(default=180.0, gt=0)
    max_dates_per_check: int = Field(default=10, ge=1)
    # Порог риска, выше которого операции блокируются
    max_risk_percentage: int = Field(default=60, ge=0, le=100)


class PlanConfig(BaseModel):
    tier: str = "one-off"
    rebooks_total: int = Field(default=5, ge=0)


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: BASE_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class StorageConfig(BaseModel):
    state_path: Path = Field(default_factory=lambda: DATA_DIR / "state.json")
    storage_state_path: Path = Field(default_factory=lambda: DATA_DIR / "storage_state.json")


class Settings(BaseModel):
    bot: BotConfig
    site: SiteConfig = SiteConfig()
    browser: BrowserConfig = BrowserConfig()
    monitor: MonitorDefaults = MonitorDefaults()
    logging: LoggingConfig = LoggingConfig()
    storage: StorageConfig = StorageConfig()
    plan: PlanConfig = PlanConfig()


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError if .env is incomplete or invalid.
    """
    # Собираем значения из окружения вручную, чтобы не зависеть от pydantic-settings
    env = os.environ

    try:
        bot = BotConfig(
            token=env.get("BOT_TOKEN", ""),
            admin_chat_id=int(env.get("ADMIN_CHAT_ID", "0") or "0"),
        )
        site = SiteConfig(
            base_url=env.get("SITE_BASE_URL", SiteConfig().base_url),
        )
        browser = BrowserConfig(
            cdp_url=env.get("CHROME_CDP_URL", "").strip(),
            launch_cdp=_flag(env.get("CHROME_LAUNCH_CDP")),
            headless=_flag(env.get("BROWSER_HEADLESS")),
            max_lifetime_seconds=int(env.get("BROWSER_MAX_LIFETIME", "3600")),
        )
        monitor = MonitorDefaults(
            check_interval=int(env.get("CHECK_INTERVAL", "30")),
            check_interval_variation=int(env.get("CHECK_INTERVAL_VARIATION", "0")),
            adaptive_timing=_flag(env.get("ADAPTIVE_TIMING")),
            risk_refresh_seconds=int(env.get("RISK_REFRESH_SECONDS", "60")),
            max_risk_percentage=int(env.get("MAX_RISK_PERCENTAGE", "60")),
        )
        logging_cfg = LoggingConfig(log_level=env.get("LOG_LEVEL", "INFO"))
        plan = PlanConfig(
            tier=env.get("SUBSCRIPTION_TIER", "one-off").strip().lower(),
            rebooks_total=int(env.get("REBOOKS_TOTAL", "5")),
        )
        return Settings(
            bot=bot,
            site=site,
            browser=browser,
            monitor=monitor,
            logging=logging_cfg,
            plan=plan,
        )
    except ValidationError:
        # Пробрасываем дальше, чтобы верхний уровень мог вывести аккуратную ошибку
        raise


__all__ = ["Settings", "get_settings", "BASE_DIR", "DATA_DIR"]
