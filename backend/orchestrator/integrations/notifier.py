"""Outbound notifications (build finished, build failed, ...)."""

from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, recipient: str, template: str, data: dict[str, Any]) -> None: ...


class LogNotifier:
    """Default notifier: records the notification in the structured log.

    Deployments with an email provider plug in their own ``Notifier``.
    """

    async def notify(self, recipient: str, template: str, data: dict[str, Any]) -> None:
        logger.info("notification_sent", recipient=recipient, template=template, data=data)


async def notify_quietly(notifier: Notifier | None, recipient: str | None, template: str, data: dict[str, Any]) -> None:
    """Fire-and-forget: a failing notifier never affects the caller."""
    if notifier is None or not recipient:
        return
    try:
        await notifier.notify(recipient, template, data)
    except Exception as e:
        logger.warning("notification_failed", recipient=recipient, template=template, error=str(e))
