"""Slack webhook notifications for agent runs and pipeline alerts.

Three message kinds go to the channel:
- agent run summaries (sync, arbitrage, whale, resolution passes)
- failed scheduled resolutions, which are never retried automatically
- circuit breaker openings for a provider
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from agents.base import AgentResult, AgentStatus

logger = logging.getLogger(__name__)

# Emoji map for agent names
_AGENT_EMOJI = {
    "sync": ":arrows_counterclockwise:",
    "arbitrage": ":moneybag:",
    "whale": ":whale:",
    "resolution_detect": ":mag:",
    "resolution_execute": ":hammer:",
}

# Emoji map for alert severity
_SEVERITY_EMOJI = {
    "critical": ":rotating_light:",
    "warning": ":warning:",
    "info": ":information_source:",
}


class SlackNotifier:
    """Sends agent run summaries and alerts to Slack via Incoming Webhook."""

    def __init__(self, webhook_url: str,
                 session: Optional[requests.Session] = None) -> None:
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def _post(self, blocks: List[Dict[str, Any]]) -> bool:
        if not self.enabled:
            return False
        try:
            resp = self.session.post(
                self.webhook_url,
                data=json.dumps({"blocks": blocks}),
                timeout=10,
            )
            if resp.status_code != 200:
                logger.warning("Slack webhook returned %d: %s", resp.status_code, resp.text)
                return False
            return True
        except requests.RequestException:
            logger.exception("Failed to send Slack notification")
            return False

    # ── Agent runs ───────────────────────────────────────────

    def notify_agent_run(self, result: AgentResult) -> bool:
        """Send a Slack notification for an agent run.

        Returns True if the message was sent successfully.
        """
        return self._post(self._build_run_message(result))

    def _build_run_message(self, result: AgentResult) -> List[Dict[str, Any]]:
        """Build Slack Block Kit message."""
        emoji = _AGENT_EMOJI.get(result.agent_name, ":robot_face:")
        status_emoji = ":white_check_mark:" if result.status == AgentStatus.SUCCESS else ":x:"
        title = result.agent_name.replace("_", " ").title()

        blocks: List[Dict[str, Any]] = [{
            "type": "header",
            "text": {"type": "plain_text", "text": f"{title} Agent Run", "emoji": True},
        }]

        duration = f"{result.duration_seconds:.1f}s" if result.duration_seconds else "N/A"
        summary_lines = [
            f"{emoji} *Agent:* {title}",
            f"{status_emoji} *Status:* {result.status.value}",
            f":stopwatch: *Duration:* {duration}",
            f":package: *Items Processed:* {result.items_processed}",
        ]
        if result.summary:
            summary_lines.append(f":memo: *Summary:* {result.summary}")
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(summary_lines)},
        })

        if result.error:
            blocks.append({"type": "divider"})
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f":x: *Error:* ```{result.error[:500]}```"},
            })

        errors = result.data.get("errors") or []
        if errors:
            shown = "\n".join(f"- {e[:200]}" for e in errors[:5])
            blocks.append({
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"{_SEVERITY_EMOJI['warning']} *Errors ({len(errors)}):*\n{shown}",
                },
            })

        blocks.append({"type": "divider"})
        blocks.append({
            "type": "context",
            "elements": [{
                "type": "mrkdwn",
                "text": f":clock1: {result.completed_at or 'N/A'} UTC | Market Sync Pipeline",
            }],
        })
        return blocks

    # ── Alerts ───────────────────────────────────────────────

    def _alert(self, severity: str, title: str, lines: List[str]) -> bool:
        sev_emoji = _SEVERITY_EMOJI.get(severity, ":grey_question:")
        return self._post([
            {
                "type": "header",
                "text": {"type": "plain_text", "text": title, "emoji": True},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"{sev_emoji} " + "\n".join(lines)},
            },
        ])

    def notify_resolution_failure(self, action: Dict[str, Any], error: str) -> bool:
        """Alert on a scheduled resolution that failed and needs an operator."""
        return self._alert("critical", "Resolution Failed", [
            f"*Market:* {action.get('oracle_source', '?')}:{action.get('external_market_id', '?')}",
            f"*Mirror:* {action.get('mirror_key', '?')}",
            f"*Outcome:* {action.get('outcome', '?')}",
            f"*Action:* {action.get('id', '?')} (executor {action.get('executor_action_id') or 'n/a'})",
            f"*Error:* ```{error[:500]}```",
        ])

    def notify_breaker_open(self, provider: str, failures: int, cooldown: float) -> bool:
        """Alert that a provider's circuit breaker has opened."""
        return self._alert("warning", "Circuit Breaker Open", [
            f"*Provider:* {provider}",
            f"*Consecutive failures:* {failures}",
            f"*Cooldown:* {cooldown:.0f}s",
        ])
