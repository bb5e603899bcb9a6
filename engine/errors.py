"""Exception types raised by the policy engine.

Policy denials are returned as data (SafetyDecision, ScheduleResult, ...);
these exceptions cover missing entities, malformed input and failing
external services.
"""
from typing import Optional
from uuid import UUID


class EngineError(Exception):
    pass


class NotFoundError(EngineError):
    entity = "entity"

    def __init__(self, entity_id: UUID | str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found")


class ConversationNotFound(NotFoundError):
    entity = "Conversation"


class GoalNotFound(NotFoundError):
    entity = "Goal"


class FollowUpNotFound(NotFoundError):
    entity = "Follow-up"


class SchedulingValidationError(EngineError, ValueError):
    pass


class ConfigVersionConflict(EngineError):
    def __init__(self, account_id: str, expected: int, actual: Optional[int]):
        self.account_id = account_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Config for account {account_id} is at version {actual}, expected {expected}"
        )


class ExternalServiceError(EngineError):
    def __init__(self, service: str, message: str, *, retryable: bool = False):
        self.service = service
        self.retryable = retryable
        super().__init__(f"{service}: {message}")


class CompletionError(ExternalServiceError):
    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__("completion", message, retryable=retryable)
