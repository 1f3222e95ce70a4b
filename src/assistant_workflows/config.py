"""
运行时配置（来自环境变量）
"""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """运行时配置"""
    database_url: str = "sqlite+aiosqlite:///./assistant_workflows.db"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    api_workers: int = 1
    scheduler_enabled: bool = True
    scheduler_poll_interval: float = 10.0
    http_step_timeout: float = 30.0
    max_steps_per_execution: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """从环境变量构建配置"""
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            api_host=os.getenv("API_HOST", cls.api_host),
            api_port=int(os.getenv("API_PORT", cls.api_port)),
            api_reload=_env_bool("API_RELOAD", cls.api_reload),
            api_workers=int(os.getenv("API_WORKERS", cls.api_workers)),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", cls.scheduler_enabled),
            scheduler_poll_interval=float(
                os.getenv("SCHEDULER_POLL_INTERVAL", cls.scheduler_poll_interval)
            ),
            http_step_timeout=float(os.getenv("HTTP_STEP_TIMEOUT", cls.http_step_timeout)),
            max_steps_per_execution=int(
                os.getenv("MAX_STEPS_PER_EXECUTION", cls.max_steps_per_execution)
            ),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
