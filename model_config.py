"""Completion model and provider selection.

Priority:
  1. ANTHROPIC_API_KEY set → use Anthropic API directly
  2. Otherwise → use Vertex AI (requires GOOGLE_CLOUD_PROJECT + service account)

COMPLETION_MODEL overrides the model identifier for either provider.

Usage:
    from model_config import init_provider, get_completion_model
    init_provider()
    model = get_completion_model()
"""
import logging
import os

import litellm
import vertexai

logger = logging.getLogger(__name__)

# Model identifiers
ANTHROPIC_MODEL = "anthropic/claude-sonnet-4-6"
VERTEX_MODEL = "vertex_ai/claude-sonnet-4-5@20250929"

_initialized = False


def active_provider() -> str:
    """Return 'anthropic' or 'vertex_ai' depending on which is active."""
    return "anthropic" if os.environ.get("ANTHROPIC_API_KEY") else "vertex_ai"


def get_completion_model() -> str:
    """Return the litellm model identifier for the active provider."""
    override = os.environ.get("COMPLETION_MODEL")
    if override:
        return override
    if active_provider() == "anthropic":
        return ANTHROPIC_MODEL
    return VERTEX_MODEL


def init_provider() -> None:
    """Initialize the active completion provider once per process."""
    global _initialized
    if _initialized:
        return

    if active_provider() == "anthropic":
        logger.info("Completion provider: Anthropic API (ANTHROPIC_API_KEY is set)")
    else:
        project = os.environ["GOOGLE_CLOUD_PROJECT"]
        location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-east5")
        vertexai.init(project=project, location=location)
        logger.info("Completion provider: Vertex AI (project=%s, location=%s)", project, location)

    if os.environ.get("LANGFUSE_PUBLIC_KEY"):
        litellm.success_callback = ["langfuse"]
        litellm.failure_callback = ["langfuse"]

    _initialized = True
