"""
Configuration management for the calling bot.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


SIGNALING_MODES = ("log", "graph")
TTS_PROVIDERS = ("azure", "openai")


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 8000
    log_level: str = "INFO"
    callback_path: str = "/api/calling"

    # Wake phrase
    wake_phrase: str = "cuboid"

    # Brain
    brain_url: str = ""
    brain_timeout_seconds: float = 15.0
    brain_max_voice_seconds: int = 20

    # Signaling (Microsoft Graph communications)
    # - "log" only logs answer/reject/hangup and reports success
    # - "graph" calls the Graph REST API with client credentials
    signaling_mode: str = "log"
    graph_base_url: str = "https://graph.microsoft.com/beta"
    ms_tenant_id: str = ""
    ms_app_id: str = ""
    ms_app_secret: str = ""

    # Speech synthesis
    tts_provider: str = "azure"  # "azure" | "openai"
    speech_key: str = ""
    speech_region: str = ""
    tts_voice: str = "en-GB-LibbyNeural"
    tts_output_format: str = "audio-16khz-32kbitrate-mono-mp3"
    openai_api_key: str = ""
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"

    # Pacing heuristics
    greeting_delay_seconds: float = 2.0
    max_playback_seconds: float = 20.0
    playback_bytes_per_second: int = 4000  # 32 kbit/s mp3

    # Conversation history
    history_context_entries: int = 5
    history_max_entries: int = 20
    history_trim_count: int = 10

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def callback_url(self) -> str:
        """Callback address handed to the signaling service when answering."""
        return f"{self.base_url}{self.callback_path}"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.brain_url:
            missing.append("BRAIN_URL")
        if not self.wake_phrase.strip():
            missing.append("WAKE_PHRASE")

        mode = (self.signaling_mode or "log").strip().lower()
        if mode not in SIGNALING_MODES:
            raise ConfigError(
                f"Invalid SIGNALING_MODE '{self.signaling_mode}'. Expected 'log' or 'graph'."
            )
        if mode == "graph":
            if not self.ms_tenant_id:
                missing.append("MS_TENANT_ID")
            if not self.ms_app_id:
                missing.append("MS_APP_ID")
            if not self.ms_app_secret:
                missing.append("MS_APP_SECRET")

        provider = (self.tts_provider or "azure").strip().lower()
        if provider not in TTS_PROVIDERS:
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'azure' or 'openai'."
            )
        if provider == "azure":
            if not self.speech_key:
                missing.append("SPEECH_KEY")
            if not self.speech_region:
                missing.append("SPEECH_REGION")
        if provider == "openai" and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            callback_url=self.callback_url,
            wake_phrase=self.wake_phrase,
            brain_url=self.brain_url,
            brain_timeout_seconds=self.brain_timeout_seconds,
            signaling_mode=self.signaling_mode,
            tts_provider=self.tts_provider,
            tts_voice=self.tts_voice,
            greeting_delay_seconds=self.greeting_delay_seconds,
            max_playback_seconds=self.max_playback_seconds,
            ms_app_id_set=bool(self.ms_app_id),
            ms_app_secret_set=bool(self.ms_app_secret),
            speech_key_set=bool(self.speech_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    callback_path = "/" + os.getenv("CALLBACK_PATH", "/api/calling").strip().strip("/")

    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        callback_path=callback_path,

        # Wake phrase
        wake_phrase=os.getenv("WAKE_PHRASE", "cuboid"),

        # Brain
        brain_url=os.getenv("BRAIN_URL", ""),
        brain_timeout_seconds=_get_float("BRAIN_TIMEOUT_SECONDS", 15.0),
        brain_max_voice_seconds=_get_int("BRAIN_MAX_VOICE_SECONDS", 20),

        # Signaling
        signaling_mode=os.getenv("SIGNALING_MODE", "log").strip().lower(),
        graph_base_url=os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/beta").rstrip("/"),
        ms_tenant_id=os.getenv("MS_TENANT_ID", ""),
        ms_app_id=os.getenv("MS_APP_ID", ""),
        ms_app_secret=os.getenv("MS_APP_SECRET", ""),

        # Speech synthesis
        tts_provider=os.getenv("TTS_PROVIDER", "azure").strip().lower(),
        speech_key=os.getenv("SPEECH_KEY", ""),
        speech_region=os.getenv("SPEECH_REGION", ""),
        tts_voice=os.getenv("TTS_VOICE", "en-GB-LibbyNeural"),
        tts_output_format=os.getenv("TTS_OUTPUT_FORMAT", "audio-16khz-32kbitrate-mono-mp3"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Pacing heuristics
        greeting_delay_seconds=_get_float("GREETING_DELAY_SECONDS", 2.0),
        max_playback_seconds=_get_float("MAX_PLAYBACK_SECONDS", 20.0),
        playback_bytes_per_second=_get_int("PLAYBACK_BYTES_PER_SECOND", 4000),

        # Conversation history
        history_context_entries=_get_int("HISTORY_CONTEXT_ENTRIES", 5),
        history_max_entries=_get_int("HISTORY_MAX_ENTRIES", 20),
        history_trim_count=_get_int("HISTORY_TRIM_COUNT", 10),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
