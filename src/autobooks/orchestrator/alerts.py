"""Alert delivery for failed workflows."""

from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


class AlertSink(Protocol):
    """Delivers workflow alerts to a channel (email, slack, ...)."""

    async def send(self, channel: str, alert: dict[str, Any]) -> None:
        ...


class LoggingAlertSink:
    """Alert sink that writes alerts to the log."""

    async def send(self, channel: str, alert: dict[str, Any]) -> None:
        logger.warning("workflow_alert", channel=channel, **alert)
