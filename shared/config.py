"""
Configuration module - Central access point for environment variables.

CRITICAL: Access ALL environment variables through this module.
NEVER use os.getenv() directly in application code.
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class StaffMember(BaseModel):
    """Provider or interpreter with one calendar per consult mode."""

    name: str
    user_id: str | None = None
    online_calendar_id: str | None = None
    in_person_calendar_id: str | None = None
    # tattoo styles this provider is the go-to artist for, lowercase
    styles: list[str] = Field(default_factory=list)

    def calendar_for_mode(self, mode: str) -> str | None:
        if mode == "in_person":
            return self.in_person_calendar_id
        return self.online_calendar_id

    def calendar_ids(self) -> list[str]:
        return [c for c in (self.online_calendar_id, self.in_person_calendar_id) if c]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis
    REDIS_URL: str = Field(
        default="redis://redis:6379/0",
        description="Redis connection string"
    )

    # CRM (contacts, conversations, calendars, opportunities)
    CRM_API_URL: str = Field(default="https://services.leadconnectorhq.com")
    CRM_API_TOKEN: str = Field(default="placeholder")
    CRM_API_VERSION: str = Field(default="2021-04-15")
    CRM_LOCATION_ID: str = Field(default="location_placeholder")
    CRM_PIPELINE_ID: str = Field(default="pipeline_placeholder")
    PIPELINE_STAGE_IDS: dict[str, str] = Field(
        default_factory=dict,
        description="JSON map of stage key (e.g. DEPOSIT_PENDING) to CRM pipeline stage id"
    )
    CRM_WEBHOOK_TOKEN: str = Field(
        default="crm_webhook_token_placeholder",
        description="Secret token for CRM webhook URL authentication (min 24 chars recommended)"
    )

    # OpenRouter (Unified LLM API)
    OPENROUTER_API_KEY: str = Field(default="sk-or-placeholder")
    LLM_MODEL: str = Field(
        default="openai/gpt-4o-mini",
        description="AI model for conversations (OpenRouter format)"
    )
    LLM_TEMPERATURE: float = Field(default=0.3)

    # Payments (deposit links + refunds)
    PAYMENT_API_URL: str = Field(default="https://connect.squareup.com")
    PAYMENT_ACCESS_TOKEN: str = Field(default="placeholder")
    PAYMENT_LOCATION_ID: str = Field(default="payment_location_placeholder")
    PAYMENT_WEBHOOK_TOKEN: str = Field(
        default="payment_webhook_token_placeholder",
        description="Secret token for payment webhook URL authentication"
    )
    DEPOSIT_AMOUNT_CENTS: int = Field(default=10000)
    DEPOSIT_CURRENCY: str = Field(default="USD")
    DEPOSIT_DESCRIPTION: str = Field(default="Refundable consultation deposit")

    # Hold lifecycle
    HOLD_MINUTES: int = Field(
        default=20,
        description="Minutes of inactivity after which a tentative hold is released"
    )
    HOLD_WARNING_MINUTES: int = Field(
        default=10,
        description="Minutes before release at which the one-time warning is sent"
    )
    HOLD_CHECK_INTERVAL_SECONDS: int = Field(default=60)

    # Inbound debounce
    MESSAGE_DEBOUNCE_SECONDS: int = Field(
        default=15,
        description="Quiet period before a contact's batched messages are processed (0 = disabled)"
    )

    # Scheduling
    TIMEZONE: str = Field(default="America/Chicago")
    SLOT_DURATION_MINUTES: int = Field(default=30)
    SLOT_SEARCH_DAYS: int = Field(default=14)
    CALENDAR_MAX_RANGE_DAYS: int = Field(default=31)
    MAX_SLOTS_OFFERED: int = Field(default=4)
    WORKLOAD_WINDOW: str = Field(
        default="week",
        description="Workload scoring window for provider fairness: 'day' or 'week'"
    )

    # Roster (JSON lists, declaration order is the tie-break order)
    PROVIDERS: list[StaffMember] = Field(default_factory=list)
    INTERPRETERS: list[StaffMember] = Field(default_factory=list)

    # Application Settings
    LOG_LEVEL: str = Field(default="INFO")
    CORS_ORIGINS: str = Field(default="http://localhost:3000")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    def provider_calendar_ids(self) -> set[str]:
        return {cid for p in self.PROVIDERS for cid in p.calendar_ids()}

    def interpreter_calendar_ids(self) -> set[str]:
        return {cid for i in self.INTERPRETERS for cid in i.calendar_ids()}


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
