from dataclasses import dataclass
from functools import lru_cache
import os
import shlex


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_echo: bool
    max_concurrent_jobs: int
    idle_timeout_seconds: float
    render_backend: str
    render_command: tuple[str, ...]
    render_workdir: str
    render_url: str
    render_timeout_seconds: float
    templates_dir: str
    output_dir: str
    host: str
    port: int
    log_level: str


@lru_cache
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv(
            "FRAMIX_DATABASE_URL",
            "sqlite+pysqlite:///./data/framix.db",
        ),
        db_echo=_to_bool(os.getenv("FRAMIX_DB_ECHO"), default=False),
        max_concurrent_jobs=_to_int(
            os.getenv("FRAMIX_MAX_CONCURRENT_JOBS"), default=1, minimum=1
        ),
        idle_timeout_seconds=_to_float(
            os.getenv("FRAMIX_IDLE_TIMEOUT_SECONDS"), default=0.0, minimum=0.0
        ),
        render_backend=os.getenv("FRAMIX_RENDER_BACKEND", "subprocess").strip().lower(),
        render_command=tuple(
            shlex.split(os.getenv("FRAMIX_RENDER_COMMAND", "bun run render-template.ts"))
        ),
        render_workdir=os.getenv("FRAMIX_RENDER_WORKDIR", "."),
        render_url=os.getenv("FRAMIX_RENDER_URL", "http://localhost:4300"),
        render_timeout_seconds=_to_float(
            os.getenv("FRAMIX_RENDER_TIMEOUT_SECONDS"), default=600.0, minimum=1.0
        ),
        templates_dir=os.getenv("FRAMIX_TEMPLATES_DIR", "src/templates"),
        output_dir=os.getenv("FRAMIX_OUTPUT_DIR", "output"),
        host=os.getenv("FRAMIX_HOST", "127.0.0.1"),
        port=_to_int(os.getenv("FRAMIX_PORT"), default=3001, minimum=1),
        log_level=os.getenv("FRAMIX_LOG_LEVEL", "INFO").strip().upper(),
    )
