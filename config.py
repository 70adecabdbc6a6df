"""Centralized configuration using pydantic-settings."""

from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Chatlog transcript service (e.g. "127.0.0.1:5030")
    chatlog_url: str = ""

    # LLM provider keys
    deepseek_api_key: str = ""
    gemini_api_key: str = ""
    kimi_api_key: str = ""

    # Optional proxy for provider calls (e.g. "http://127.0.0.1:7897")
    llm_proxy_url: str = ""

    # Scheduling and calendar math happen in this zone
    timezone: str = "Asia/Shanghai"

    # Storage
    db_path: str = "output/chatlens.db"
    reports_dir: str = "output/reports"

    # Timeouts (seconds, per HTTP call)
    transcript_timeout_seconds: int = 15
    llm_timeout_seconds: int = 120

    # LLM retry policy: attempt N waits N * delay before the next attempt
    llm_max_attempts: int = 2
    llm_retry_delay_seconds: float = 2.0

    # Pause between rooms of one run
    room_delay_seconds: float = 1.0

    # Tokens kept free when fitting a prompt into a model's input budget
    prompt_safety_margin: int = 500

    # Scheduler status log interval
    heartbeat_minutes: int = 60

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


settings = Settings()
