"""Runtime configuration loaded from environment variables.

This module centralizes backend settings such as database URL, AI provider
mode, OpenAI model options, board geometry and simulation loop defaults.
"""

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Typed settings object used across the backend."""

    env: str = os.getenv("ENV", "dev")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./data/dev.db")
    ai_mode: str = os.getenv("AI_MODE", "mock").lower()
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
    openai_max_output_tokens: int = int(os.getenv("OPENAI_MAX_OUTPUT_TOKENS", "400"))
    openai_timeout_ms: int = int(os.getenv("OPENAI_TIMEOUT_MS", "30000"))
    openai_max_retries: int = int(os.getenv("OPENAI_MAX_RETRIES", "3"))
    openai_concurrency: int = int(os.getenv("OPENAI_CONCURRENCY", "3"))
    turn_timeout_ms: int = int(os.getenv("TURN_TIMEOUT_MS", "45000"))
    max_rounds: int = int(os.getenv("MAX_ROUNDS", "10"))
    board_width: float = float(os.getenv("BOARD_WIDTH", "600"))
    board_height: float = float(os.getenv("BOARD_HEIGHT", "400"))
    round_interval_ms: int = int(os.getenv("ROUND_INTERVAL_MS", "0"))
    cors_origins: list[str] = [x.strip() for x in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if x.strip()]


settings = Settings()
