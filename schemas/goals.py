"""Goal tracking schemas."""
from typing import List, Literal
from pydantic import BaseModel, Field


GoalType = Literal["book_call", "close_sale", "re_engage", "qualify_lead", "provide_info", "custom"]


class GoalProgress(BaseModel):
    progress: int = Field(ge=0, le=100)
    completed: bool = False
    indicators_found: List[str] = []
    indicator_progress: float = 0.0
    message_progress: float = 0.0
    sentiment_bonus: float = 0.0


class GoalSuggestion(BaseModel):
    goal_type: GoalType
    reason: str
