from enum import Enum
from pathlib import Path

from pydantic_settings import BaseSettings


class DedupPrecision(str, Enum):
    """How the same-minute guard decides that an automation already fired."""

    LOCAL_MINUTE = "local-minute"  # calendar fields in the scheduler timezone
    UTC_MINUTE = "utc-minute"  # calendar fields in UTC


class Settings(BaseSettings):
    app_name: str = "Agent Automations"
    debug: bool = False

    # Paths
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "automations.db"

    # LLM
    gemini_api_key: str = ""
    default_model: str = "gemini-2.0-flash"
    default_orchestrator: str = "gemini"

    # Scheduler
    timezone: str = "UTC"  # IANA name cron expressions are evaluated in
    tick_interval_seconds: float = 30.0
    max_runs_per_automation: int = 50
    max_catchup_runs: int = 10
    catchup_max_iterations: int = 20160  # 14 days of minutes
    dedup_precision: DedupPrecision = DedupPrecision.LOCAL_MINUTE

    # Dispatcher
    completed_agents_limit: int = 200
    summary_max_chars: int = 5000

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "AUTOMATIONS_",
    }


settings = Settings()
