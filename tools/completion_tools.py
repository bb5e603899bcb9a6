"""Completion service client (litellm).

Unlike the delivery tool this raises: interactive generation surfaces a
failed completion to its caller immediately.
"""
import logging
import os
from typing import Optional

import litellm

from engine.errors import CompletionError
from model_config import get_completion_model

logger = logging.getLogger(__name__)

_RETRYABLE = (
    litellm.exceptions.Timeout,
    litellm.exceptions.APIConnectionError,
    litellm.exceptions.RateLimitError,
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.InternalServerError,
)


def _timeout() -> float:
    return float(os.environ.get("COMPLETION_TIMEOUT", "60"))


async def complete(
    messages: list[dict],
    *,
    temperature: float = 0.7,
    max_tokens: int = 1024,
    model: Optional[str] = None,
) -> str:
    """Send role-tagged messages, return the reply text.

    Raises CompletionError; timeouts and transient provider errors are
    marked retryable.
    """
    model = model or get_completion_model()
    try:
        response = await litellm.acompletion(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=_timeout(),
        )
    except _RETRYABLE as exc:
        logger.warning("Completion call to %s failed (retryable): %s", model, exc)
        raise CompletionError(str(exc), retryable=True) from exc
    except Exception as exc:
        logger.error("Completion call to %s failed: %s", model, exc)
        raise CompletionError(str(exc)) from exc

    text = response.choices[0].message.content if response.choices else None
    if not text or not text.strip():
        raise CompletionError("empty completion", retryable=True)
    return text.strip()
