"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import Literal
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=[
            str(Path(__file__).parent.parent.parent / ".env"),
        ],
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App metadata
    APP_NAME: str = "Agent Marketplace"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/marketplace.db"

    # Decision oracle: deterministic rules, or an LLM with rule fallback
    ORACLE_MODE: Literal["rules", "llm"] = "rules"

    # LLM Provider Selection
    LLM_PROVIDER: Literal["lm_studio", "openrouter", "groq"] = "lm_studio"

    LM_STUDIO_BASE_URL: str = "http://localhost:1234/v1"
    LM_STUDIO_DEFAULT_MODEL: str = "qwen/qwen3-1.7b"

    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_DEFAULT_MODEL: str = "google/gemini-2.5-flash-lite"

    GROQ_API_KEY: str = ""
    GROQ_BASE_URL: str = "https://api.groq.com/openai/v1"
    GROQ_DEFAULT_MODEL: str = "llama-3.3-70b-versatile"

    # LLM Request Configuration
    LLM_TIMEOUT: float = 30.0  # seconds
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_DELAY: float = 2.0  # seconds, base for exponential backoff
    LLM_DEFAULT_TEMPERATURE: float = 0.0
    LLM_DEFAULT_MAX_TOKENS: int = 512

    # Negotiation policy
    MAX_NEGOTIATION_ROUNDS: int = 3
    OFFER_RATIO: float = 0.9  # initial offer as a fraction of asking price
    ACCEPT_THRESHOLD: float = 0.9  # seller accepts at or above this fraction
    COUNTER_FLOOR: float = 0.8  # seller counters between floor and threshold
    NEGOTIATION_TIMEOUT_MINUTES: int = 30
    RESERVATION_TTL_SECONDS: int = 300

    # External collaborator timeouts (seconds) and retries
    DISCOVERY_TIMEOUT_SECONDS: float = 10.0
    ORACLE_TIMEOUT_SECONDS: float = 45.0
    TRANSPORT_TIMEOUT_SECONDS: float = 30.0
    SETTLEMENT_TIMEOUT_SECONDS: float = 30.0
    EXTERNAL_MAX_RETRIES: int = 3
    EXTERNAL_RETRY_DELAY: float = 0.5
    DISCOVERY_FANOUT_LIMIT: int = 5

    # Agent identities
    CAPABILITY_TAG: str = "marketplace_seller"
    BUYER_AGENT_ID: str = "buyer-agent"
    BUYER_ADDRESS: str = "0.0.1001"
    SELLER_AGENT_ID: str = "seller-agent"
    SELLER_NAME: str = "Marketplace Seller Agent"
    SELLER_ADDRESS: str = "0.0.2002"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    A2A_API_KEY: str = ""

    # Discovery
    DISCOVERY_MODE: Literal["local", "http"] = "local"
    DISCOVERY_REGISTRY_URL: str = "http://localhost:8100"

    # Settlement
    SETTLEMENT_MODE: Literal["local", "http"] = "local"
    SETTLEMENT_BASE_URL: str = "http://localhost:8200"
    SETTLEMENT_API_KEY: str = ""
    SUPPORTED_CURRENCIES: str = "HBAR,USDC"
    LOCAL_LEDGER_OPENING_BALANCE: float = 10000.0

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    @field_validator("CORS_ORIGINS", "SUPPORTED_CURRENCIES", mode="before")
    @classmethod
    def join_list_values(cls, v):
        """Accept either a comma-separated string or a list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    @field_validator("OFFER_RATIO", "ACCEPT_THRESHOLD", "COUNTER_FLOOR")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Policy ratios are fractions of the asking price."""
        if not 0 < v <= 1:
            raise ValueError("ratio must be in (0, 1]")
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def get_supported_currencies(self) -> set[str]:
        """Get supported settlement currencies as an upper-case set."""
        return {c.strip().upper() for c in self.SUPPORTED_CURRENCIES.split(",") if c.strip()}

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"


# Singleton instance
settings = Settings()
