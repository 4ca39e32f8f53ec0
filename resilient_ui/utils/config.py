# resilient_ui/utils/config.py
from __future__ import annotations

import functools
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BrowserType(str, Enum):
    chromium = "chromium"
    firefox = "firefox"
    webkit = "webkit"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_PATH_FIELDS = ("OUTPUT_DIR", "SCENARIOS_DIR", "STORAGE_STATE_DIR", "TRACE_DIR", "LOG_FILE")


class Settings(BaseSettings):
    """
    Engine configuration.

    Precedence: environment variables, then `.env` in the working directory,
    then the defaults below. All durations are milliseconds.
    """

    # ---- waits / locating ----
    DEFAULT_TIMEOUT_MS: int = Field(default=10000, ge=0, description="Timeout of a condition that sets none")
    POLL_INTERVAL_MS: int = Field(default=100, ge=10, le=500, description="Re-evaluation interval of polled conditions")
    PROBE_TIMEOUT_MS: int = Field(default=2000, ge=0, description="How long the locator gives one strategy")
    ACTION_TIMEOUT_MS: int = Field(default=10000, ge=0, description="Playwright timeout for a single click/fill/select")
    PAGE_LOAD_TIMEOUT: int = Field(default=60000, ge=1000, description="Playwright navigation timeout")
    SCENARIO_TIMEOUT_MS: int = Field(default=120000, ge=1000, description="Wall-clock budget of one scenario")

    # ---- retries ----
    MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Locate-act-verify cycles per action")
    VERIFY_RETRIES: int = Field(default=1, ge=0, description="Extra cycles allowed after a read-back mismatch")
    RETRY_DELAY: int = Field(default=250, ge=0, description="First backoff delay between cycles")
    CONTINUE_ON_ERROR: bool = Field(default=False, description="Downgrade failed steps to warnings")

    # ---- browser ----
    HEADLESS: bool = Field(default=True, description="Run the browser headless")
    BROWSER_TYPE: BrowserType = BrowserType.chromium
    SLOW_MO: int = Field(default=0, ge=0)
    VIEWPORT_WIDTH: int = Field(default=1366, ge=320, le=7680)
    VIEWPORT_HEIGHT: int = Field(default=768, ge=320, le=4320)
    USER_AGENT: Optional[str] = None
    BASE_URL: Optional[str] = Field(default=None, description="Prefix for relative goto URLs")
    PROXY_SERVER: Optional[str] = None
    PROXY_USERNAME: Optional[str] = None
    PROXY_PASSWORD: Optional[str] = None

    # ---- runs ----
    OUTPUT_DIR: Path = Field(default=Path("./runs"), description="run.log and result.json per scenario run")
    SCENARIOS_DIR: Path = Path("./scenarios")
    STORAGE_STATE_DIR: Path = Field(default=Path("./storage_state"), description="<app>.json logged-in state")
    PARALLEL_EXECUTION: bool = False
    MAX_WORKERS: int = Field(default=3, ge=1)
    SAVE_TRACES: bool = False
    TRACE_DIR: Path = Path("./traces")
    SCREENSHOT_ON_FAILURE: bool = True

    # ---- logging ----
    LOG_LEVEL: LogLevel = LogLevel.INFO
    LOG_TO_FILE: bool = False
    LOG_FILE: Path = Path("./resilient-ui.log")
    COLORIZED_OUTPUT: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator(*_PATH_FIELDS, mode="after")
    @classmethod
    def _absolutize(cls, v: Path) -> Path:
        return v if v.is_absolute() else Path.cwd() / v

    @field_validator("BASE_URL")
    @classmethod
    def _strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    @model_validator(mode="after")
    def _proxy_credentials_paired(self) -> "Settings":
        if bool(self.PROXY_USERNAME) != bool(self.PROXY_PASSWORD):
            raise ValueError("PROXY_USERNAME and PROXY_PASSWORD must be set together")
        return self

    def ensure_dirs(self) -> None:
        self.OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        self.STORAGE_STATE_DIR.mkdir(parents=True, exist_ok=True)
        if self.SAVE_TRACES:
            self.TRACE_DIR.mkdir(parents=True, exist_ok=True)

    def playwright_launch_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for `browser_type.launch()`."""
        kwargs: Dict[str, Any] = {"headless": self.HEADLESS, "slow_mo": self.SLOW_MO}
        if self.PROXY_SERVER:
            kwargs["proxy"] = {"server": self.PROXY_SERVER}
            if self.PROXY_USERNAME:
                kwargs["proxy"].update(username=self.PROXY_USERNAME, password=self.PROXY_PASSWORD)
        return kwargs

    def playwright_context_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for `browser.new_context()`; storage state is added per scenario."""
        kwargs: Dict[str, Any] = {"viewport": {"width": self.VIEWPORT_WIDTH, "height": self.VIEWPORT_HEIGHT}}
        if self.USER_AGENT:
            kwargs["user_agent"] = self.USER_AGENT
        return kwargs


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Settings for this process, loaded once.
    `get_settings.cache_clear()` forces a reload after the environment changed.
    """
    s = Settings()
    s.ensure_dirs()
    return s
