import os
from dataclasses import dataclass, field
from typing import List, Optional

from wake_phrase import DEFAULT_WAKE_PHRASES

# Configuration - default values
DEFAULT_AGENT_MODEL = "claude-3-5-haiku-latest"
DEFAULT_TRANSCRIPT_TIMEOUT = 10.0  # seconds
DEFAULT_NOTIFICATION_LIMIT = 5
DEFAULT_LOCATION_TIMEOUT = 5.0  # seconds
REQUIRED_ENV_VARS = ["ANTHROPIC_API_KEY"]


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() not in {"0", "false", "no", "off", ""}


def _env_list(name: str, default: List[str]) -> List[str]:
    val = os.environ.get(name)
    if val is None:
        return list(default)
    items = [item.strip() for item in val.split(",") if item.strip()]
    return items or list(default)


@dataclass
class SegmentationPolicy:
    """How long to wait after the last fragment before a query is complete (seconds)"""

    # Only the wake phrase was said, give the user time to continue
    wake_only_wait: float = 10.0
    # Final transcript with a question after the wake phrase
    final_wait: float = 1.5
    # Partial transcript, the recogniser is still working
    partial_wait: float = 3.0
    # Fragments are ignored for this long after a response is shown
    cooldown: float = 2.0

    @classmethod
    def from_env(cls) -> "SegmentationPolicy":
        return cls(
            wake_only_wait=_env_float("MIRA_WAKE_ONLY_WAIT", cls.wake_only_wait),
            final_wait=_env_float("MIRA_FINAL_WAIT", cls.final_wait),
            partial_wait=_env_float("MIRA_PARTIAL_WAIT", cls.partial_wait),
            cooldown=_env_float("MIRA_COOLDOWN", cls.cooldown),
        )


@dataclass
class DisplayConfig:
    line_width: int = 30
    max_lines: int = 3
    max_final_transcripts: int = 3
    is_chinese: bool = False
    placeholder: str = "Listening..."
    live_duration_ms: int = 10000
    status_duration_ms: int = 5000
    result_duration_ms: int = 8000
    query_preview_chars: int = 60

    @classmethod
    def from_env(cls) -> "DisplayConfig":
        return cls(
            line_width=_env_int("MIRA_LINE_WIDTH", cls.line_width),
            max_lines=_env_int("MIRA_MAX_LINES", cls.max_lines),
            max_final_transcripts=_env_int("MIRA_MAX_FINAL_TRANSCRIPTS", cls.max_final_transcripts),
            is_chinese=_env_bool("MIRA_IS_CHINESE", cls.is_chinese),
        )


@dataclass
class AssistantConfig:
    server_url: str = ""
    transcript_timeout: float = DEFAULT_TRANSCRIPT_TIMEOUT
    wake_phrases: List[str] = field(default_factory=lambda: list(DEFAULT_WAKE_PHRASES))
    agent_model: str = DEFAULT_AGENT_MODEL
    notification_limit: int = DEFAULT_NOTIFICATION_LIMIT
    locationiq_token: str = ""
    location_timeout: float = DEFAULT_LOCATION_TIMEOUT
    policy: SegmentationPolicy = field(default_factory=SegmentationPolicy)
    display: DisplayConfig = field(default_factory=DisplayConfig)

    @classmethod
    def from_env(cls) -> "AssistantConfig":
        return cls(
            server_url=os.environ.get("MIRA_SERVER_URL", ""),
            transcript_timeout=_env_float("MIRA_TRANSCRIPT_TIMEOUT", DEFAULT_TRANSCRIPT_TIMEOUT),
            wake_phrases=_env_list("MIRA_WAKE_PHRASES", DEFAULT_WAKE_PHRASES),
            agent_model=os.environ.get("MIRA_AGENT_MODEL", DEFAULT_AGENT_MODEL),
            notification_limit=_env_int("MIRA_NOTIFICATION_LIMIT", DEFAULT_NOTIFICATION_LIMIT),
            locationiq_token=os.environ.get("LOCATIONIQ_TOKEN", ""),
            location_timeout=_env_float("MIRA_LOCATION_TIMEOUT", DEFAULT_LOCATION_TIMEOUT),
            policy=SegmentationPolicy.from_env(),
            display=DisplayConfig.from_env(),
        )


def missing_env_vars(required: Optional[List[str]] = None) -> List[str]:
    return [var for var in (required or REQUIRED_ENV_VARS) if not os.environ.get(var)]
