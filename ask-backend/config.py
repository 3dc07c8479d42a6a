"""
Configuration for the Ask backend.

Two objects, both immutable and passed explicitly into the components that
need them:

- PipelineConfig: thresholds and ceilings used by the sanitizer, the
  pattern aggregator, the similarity scorer and the fallback controller.
  Components never read the environment themselves, so unit tests can
  build a PipelineConfig with whatever thresholds they want to exercise.
- ServiceSettings: connection strings, collaborator credentials and the
  internal API key. Only main.py reads these.

Both have a from_env() constructor that reads the process environment
(after load_dotenv()).
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"[CONFIG] {name}={raw!r} is not an integer, using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class PipelineConfig:
    """
    Thresholds for one request's worth of query handling.

    Attributes:
        row_ceiling: Maximum LIMIT any executed tabular query may carry
        pattern_window_months: Default time window for pattern aggregation
        expanded_window_months: Window used for the sparse-result retry (ten years)
        min_pattern_edges: Fewer edges than this is a sparse pattern result
        pattern_limit: Maximum number of pattern edges returned
        similar_limit: Maximum number of similar neighbors returned
        summary_row_sample: Rows handed to the summarizer
        summary_pattern_sample: Pattern edges handed to the summarizer
        eager_fan_out: Start the secondary branch together with the primary
    """
    row_ceiling: int = 500
    pattern_window_months: int = 24
    expanded_window_months: int = 120
    min_pattern_edges: int = 3
    pattern_limit: int = 500
    similar_limit: int = 6
    summary_row_sample: int = 200
    summary_pattern_sample: int = 100
    eager_fan_out: bool = True

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        load_dotenv()
        defaults = cls()
        return cls(
            row_ceiling=_env_int("ASK_ROW_CEILING", defaults.row_ceiling),
            pattern_window_months=_env_int("ASK_PATTERN_WINDOW_MONTHS", defaults.pattern_window_months),
            expanded_window_months=_env_int("ASK_EXPANDED_WINDOW_MONTHS", defaults.expanded_window_months),
            min_pattern_edges=_env_int("ASK_MIN_PATTERN_EDGES", defaults.min_pattern_edges),
            pattern_limit=_env_int("ASK_PATTERN_LIMIT", defaults.pattern_limit),
            similar_limit=_env_int("ASK_SIMILAR_LIMIT", defaults.similar_limit),
            summary_row_sample=defaults.summary_row_sample,
            summary_pattern_sample=defaults.summary_pattern_sample,
            eager_fan_out=_env_bool("ASK_EAGER_FAN_OUT", defaults.eager_fan_out),
        )


@dataclass(frozen=True)
class ServiceSettings:
    """Connection and collaborator settings for the HTTP service."""
    database_url: str
    ai_provider: str = "groq"
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    internal_api_key: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        load_dotenv()
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL not found in environment variables!")

        return cls(
            database_url=database_url,
            ai_provider=(os.getenv("AI_PROVIDER") or "groq").strip().lower(),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            groq_model=os.getenv("GROQ_MODEL") or cls.groq_model,
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or cls.openai_base_url,
            openai_model=os.getenv("OPENAI_MODEL") or cls.openai_model,
            internal_api_key=os.getenv("AI_INTERNAL_API_KEY") or None,
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )
