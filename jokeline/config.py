"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("jokeline.config")


class Settings(BaseSettings):
    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # Cartesia TTS
    cartesia_api_key: str = ""
    cartesia_model_id: str = "sonic-3"
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_url: str = "wss://api.cartesia.ai/tts/websocket"
    cartesia_version: str = "2024-11-13"

    # OpenAI (transcription + judging)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    transcription_model: str = "whisper-1"
    transcription_language: str = "en"

    # Storage
    database_path: str = "./data/jokes.db"

    # Elo
    elo_initial_rating: float = 1500.0
    elo_k_factor: float = 32.0
    comparison_sample_size: int = 5

    # Segmentation (seconds)
    tick_interval: float = 0.5
    silence_threshold: float = 0.8
    max_wait: float = 1.5
    min_utterance_bytes: int = 100

    # Playback (seconds). tts_quiet_interval is the gap after the last
    # chunk that counts as "generation finished"; raise it on slow links.
    tts_quiet_interval: float = 0.3
    tts_audio_timeout: float = 2.0
    playback_frame_interval: float = 0.02
    disconnect_delay: float = 2.0

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 3000
    debug: bool = False
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-...", "AC...", "your-cartesia-key"}

        if not self.cartesia_api_key or self.cartesia_api_key in _placeholders:
            raise ValueError(
                "CARTESIA_API_KEY is missing or still a placeholder. "
                "Set it in .env to synthesize speech."
            )
        if not self.openai_api_key or self.openai_api_key in _placeholders:
            raise ValueError(
                "OPENAI_API_KEY is missing or still a placeholder. "
                "Set it in .env to transcribe and judge jokes."
            )

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        if not self.twilio_account_sid or self.twilio_account_sid in _placeholders:
            warnings.append("TWILIO_ACCOUNT_SID is not set. Recording downloads will be unauthenticated.")

        if self.comparison_sample_size < 0:
            raise ValueError("COMPARISON_SAMPLE_SIZE must be zero or positive.")

        return warnings


settings = Settings()
