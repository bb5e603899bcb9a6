"""Account-level agent configuration schemas."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class AgentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    min_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    auto_takeover_on_low_confidence: bool = True
    default_cooldown_hours: float = Field(default=4, ge=0)
    max_messages_per_day: int = Field(default=5, ge=0)
    default_message_split_threshold: int = Field(default=500, gt=0)
    intuition_fibonacci_shift: int = 0
    intuition_silence_hours: float = Field(default=24, gt=0)
    takeover_duration_hours: float = Field(default=24, gt=0)
    inter_chunk_delay_seconds: float = Field(default=1.2, ge=0)
    follow_up_max_retries: int = Field(default=3, ge=0)
    best_time_lookback_days: int = Field(default=30, gt=0)
    timezone: str = "UTC"
    system_prompt: Optional[str] = None
    knowledge_base: Optional[str] = None
    booking_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1024


class ConfigSnapshot(BaseModel):
    """Immutable view of an account's configuration at a given version."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    version: int = 0  # 0 = no stored row, defaults in effect
    config: AgentConfig = Field(default_factory=AgentConfig)
    loaded_at: datetime
