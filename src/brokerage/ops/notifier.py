"""Ops channel notifications over Slack.

Posts Block Kit messages about conditions an operator has to act on, such
as a commission that could not be paid.  The requester never sees these.
"""

from __future__ import annotations

from typing import Any, cast

import structlog
from slack_sdk import WebClient

from brokerage.domain.models import CommissionRecord
from brokerage.resilience.retry import resilient_api_call

logger = structlog.get_logger()


def build_settlement_failure_blocks(
    commission: CommissionRecord, error: str
) -> list[dict[str, Any]]:
    """Build the Block Kit payload for an unpaid commission."""
    return [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "Commission settlement failed"},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Session:*\n`{commission.session_id}`"},
                {"type": "mrkdwn", "text": f"*Commission:*\n`{commission.id}`"},
                {"type": "mrkdwn", "text": f"*Vendor:*\n{commission.vendor_id or 'unknown'}"},
                {"type": "mrkdwn", "text": f"*Broker:*\n{commission.broker_id}"},
                {"type": "mrkdwn", "text": f"*Amount:*\n{commission.amount} tokens"},
                {"type": "mrkdwn", "text": f"*Attempts:*\n{commission.attempts}"},
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Error:* `{error}`"},
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": "Left as due; retried on every sweeper tick.",
                }
            ],
        },
    ]


class OpsNotifier:
    """Posts operational alerts to one Slack channel.

    With no bot token or channel configured the notifier is disabled and
    alerts are only logged.

    Args:
        channel: Slack channel ID for ops alerts.
        bot_token: Slack bot token.
        client: Pre-built ``WebClient`` (tests inject a mock here).
    """

    def __init__(
        self,
        channel: str,
        bot_token: str = "",
        client: WebClient | None = None,
    ) -> None:
        self._channel = channel
        if client is None and bot_token:
            client = WebClient(token=bot_token)
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None and bool(self._channel)

    @resilient_api_call("slack_ops")
    def _post(self, blocks: list[dict[str, Any]], fallback_text: str) -> str:
        client = cast(WebClient, self._client)
        response = client.chat_postMessage(
            channel=self._channel,
            blocks=blocks,
            text=fallback_text,
        )
        return str(response["ts"])

    def post_settlement_failure(self, commission: CommissionRecord, error: str) -> str | None:
        """Report a commission that stayed ``due``.

        Returns:
            The Slack message ``ts``, or ``None`` when disabled or when every
            post attempt failed.
        """
        fallback = (
            f"Commission {commission.id} for session {commission.session_id} "
            f"failed: {error}"
        )
        if not self.enabled:
            logger.warning(
                "ops_notification_skipped",
                reason="ops channel not configured",
                commission_id=commission.id,
                error=error,
            )
            return None
        return self._post(build_settlement_failure_blocks(commission, error), fallback)
