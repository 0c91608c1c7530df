from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger


# Load env from common locations early so CONFERENCE_* settings are visible
try:
    here = Path(__file__).resolve().parents[1]
    env_candidates = [here / ".env", Path.cwd() / ".env"]
    for env_path in env_candidates:
        if env_path.is_file():
            load_dotenv(dotenv_path=str(env_path), override=False)
            break
except OSError:
    load_dotenv()


# Hard ceiling on discussion rounds; not a runtime setting.
MAX_ROUNDS = 10
MAX_CHARACTERS = 3
MODEL_CACHE_TTL_SECONDS = 24 * 60 * 60


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"config | invalid float for {name}={raw!r}; using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineSettings:
    data_dir: Path
    start_delay: float = 1.0
    turn_delay: float = 1.5
    resume_delay: float = 0.5
    http_timeout: float = 60.0
    auto_advance_rounds: bool = False
    app_url: str = "http://localhost"
    app_title: str = "AI Conference"
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return settings read from the environment.

    Env vars:
      - CONFERENCE_DATA_DIR (default: ~/.ai-conference)
      - CONFERENCE_START_DELAY / CONFERENCE_TURN_DELAY / CONFERENCE_RESUME_DELAY (seconds)
      - CONFERENCE_HTTP_TIMEOUT (seconds)
      - CONFERENCE_AUTO_ADVANCE_ROUNDS (keep scheduling across round boundaries)
      - CONFERENCE_APP_URL / CONFERENCE_APP_TITLE (OpenRouter attribution headers)
      - CONFERENCE_LOG_LEVEL
    """
    data_dir = Path(os.getenv("CONFERENCE_DATA_DIR", str(Path.home() / ".ai-conference")))
    return EngineSettings(
        data_dir=data_dir,
        start_delay=_env_float("CONFERENCE_START_DELAY", 1.0),
        turn_delay=_env_float("CONFERENCE_TURN_DELAY", 1.5),
        resume_delay=_env_float("CONFERENCE_RESUME_DELAY", 0.5),
        http_timeout=_env_float("CONFERENCE_HTTP_TIMEOUT", 60.0),
        auto_advance_rounds=_env_bool("CONFERENCE_AUTO_ADVANCE_ROUNDS", False),
        app_url=os.getenv("CONFERENCE_APP_URL", "http://localhost"),
        app_title=os.getenv("CONFERENCE_APP_TITLE", "AI Conference"),
        log_level=os.getenv("CONFERENCE_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str | None = None) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level or get_settings().log_level,
        colorize=True,
        format="{time:HH:mm:ss} | {level} | {message}",
    )
