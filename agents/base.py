"""Agent lifecycle shared by every pipeline pass.

Each pass (sync, arbitrage, whale, resolution detect/execute) is a
BaseAgent whose execute(context) does the work; run(context) wraps it:

1. Cancellation: a set ``stop_event`` in the context skips the pass
2. Timing (started_at, completed_at, duration)
3. Error capture, so one failing pass never takes down the scheduler
4. One agent_logs row per pass that actually ran

The shared context dict carries the collaborators an agent needs
("queries", "providers", "executor", "slack_notifier", "config",
"stop_event") so tests can hand in fakes without touching module state.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from db.models import AgentLog

logger = logging.getLogger(__name__)


class AgentStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class AgentResult:
    agent_name: str
    status: AgentStatus = AgentStatus.RUNNING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: float = 0.0
    data: Dict[str, Any] = field(default_factory=dict)
    summary: str = ""
    error: Optional[str] = None
    items_processed: int = 0


def _stopping(context: Dict[str, Any]) -> bool:
    stop_event = context.get("stop_event")
    return stop_event is not None and stop_event.is_set()


class BaseAgent(ABC):
    """One schedulable pipeline pass."""

    def __init__(self, name: str, config: Any = None) -> None:
        self.name = name
        self.config = config
        self.status: Optional[AgentStatus] = None

    @abstractmethod
    def execute(self, context: Dict[str, Any]) -> AgentResult:
        """Do one pass; raise to report failure."""
        ...

    def run(self, context: Dict[str, Any]) -> AgentResult:
        started = datetime.now(timezone.utc)

        if _stopping(context):
            logger.info("Agent '%s' skipped, shutdown in progress", self.name)
            self.status = AgentStatus.SKIPPED
            return AgentResult(
                agent_name=self.name,
                status=AgentStatus.SKIPPED,
                started_at=started.isoformat(),
                completed_at=started.isoformat(),
                summary="Skipped -- shutting down.",
            )

        self.status = AgentStatus.RUNNING
        try:
            result = self.execute(context)
            result.status = AgentStatus.SUCCESS
        except Exception as exc:
            logger.exception("Agent '%s' failed", self.name)
            result = AgentResult(agent_name=self.name, status=AgentStatus.ERROR, error=str(exc))

        completed = datetime.now(timezone.utc)
        result.agent_name = self.name
        result.started_at = started.isoformat()
        result.completed_at = completed.isoformat()
        result.duration_seconds = (completed - started).total_seconds()
        self.status = result.status

        self._log_to_db(context, result)

        # Later passes in the same CLI run read earlier results from the context
        context[f"result_{self.name}"] = result
        return result

    def _log_to_db(self, context: Dict[str, Any], result: AgentResult) -> None:
        queries = context.get("queries")
        if not queries:
            return
        try:
            queries.insert_agent_log(AgentLog(
                agent_name=result.agent_name,
                status=result.status.value,
                started_at=result.started_at,
                completed_at=result.completed_at,
                duration_seconds=result.duration_seconds,
                items_processed=result.items_processed,
                summary=result.summary,
                error=result.error,
            ))
        except Exception:
            logger.exception("Could not write agent log for '%s'", result.agent_name)
