"""Model API key resolution for sandboxes."""

import structlog

from orchestrator.core.config import Settings

logger = structlog.get_logger(__name__)


def resolve_model_api_key(
    settings: Settings,
    org_api_key: str | None = None,
    *,
    session_id: str | None = None,
) -> tuple[str, str]:
    """Pick the model API key a sandbox's agent will use.

    Organization custom key first, platform default otherwise. Only the
    source ("organization" / "platform") is logged.

    Returns:
        (api_key, source)
    """
    if org_api_key:
        source, key = "organization", org_api_key
    else:
        source, key = "platform", settings.platform_anthropic_api_key

    if not key:
        logger.warning("model_api_key_missing", session_id=session_id)
    else:
        logger.info("model_api_key_resolved", session_id=session_id, source=source)
    return key, source
