"""APScheduler integration for periodic agent execution.

Runs agents on configurable schedules:
- Sync: every 5 min, plus once at startup
- Resolution detection: every 60 s
- Resolution execution: every 60 s
- Whale: every 5 min
- Arbitrage: every 5 min

Each job runs at most one instance at a time and missed runs coalesce,
so a slow pass is never doubled up. stop() signals in-flight passes
through a shared stop event and waits for them to finish.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from agents.registry import AgentRegistry
from config import SchedulerConfig
from notifications.slack import SlackNotifier

logger = logging.getLogger(__name__)


class SchedulerRunner:
    def __init__(self, registry: AgentRegistry,
                 context_factory: Callable[[], Dict[str, Any]],
                 config: Optional[SchedulerConfig] = None,
                 slack_notifier: Optional[SlackNotifier] = None,
                 scheduler: Optional[BackgroundScheduler] = None) -> None:
        self.registry = registry
        self.context_factory = context_factory
        self.config = config or SchedulerConfig()
        self.slack_notifier = slack_notifier
        self.scheduler = scheduler or BackgroundScheduler()
        self.stop_event = threading.Event()
        self._running = False

    def _run_agent(self, agent_name: str) -> None:
        """Execute a single agent, then send Slack notification."""
        if self.stop_event.is_set():
            return
        try:
            context = self.context_factory()
            context["stop_event"] = self.stop_event

            result = self.registry.run_one(agent_name, context)
            logger.info(
                "Agent '%s' completed: %s (%d items in %.1fs)",
                agent_name, result.status.value,
                result.items_processed, result.duration_seconds,
            )
            if result.error:
                logger.error("Agent '%s' error: %s", agent_name, result.error)

            # Quiet passes stay out of the channel
            if self.slack_notifier and (result.items_processed or result.error):
                self.slack_notifier.notify_agent_run(result)

        except Exception:
            logger.exception("Failed to run agent '%s'", agent_name)

    def _schedule_map(self) -> Dict[str, Dict[str, int]]:
        return {
            "sync": {"minutes": self.config.sync_interval_minutes},
            "resolution_detect": {"seconds": self.config.detection_interval_seconds},
            "resolution_execute": {"seconds": self.config.execution_interval_seconds},
            "whale": {"minutes": self.config.whale_interval_minutes},
            "arbitrage": {"minutes": self.config.arbitrage_interval_minutes},
        }

    def setup(self) -> None:
        """Configure scheduled jobs for each registered agent."""
        for agent_name, interval in self._schedule_map().items():
            if not self.registry.get(agent_name):
                continue
            extra: Dict[str, Any] = {}
            if agent_name == "sync":
                extra["next_run_time"] = datetime.now(timezone.utc)
            self.scheduler.add_job(
                self._run_agent,
                "interval",
                args=[agent_name],
                id=f"agent_{agent_name}",
                name=f"{agent_name.replace('_', ' ').title()} Agent",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                **interval,
                **extra,
            )
            unit, value = next(iter(interval.items()))
            logger.info("Scheduled '%s' agent every %d %s", agent_name, value, unit)

    def start(self) -> None:
        """Start the scheduler."""
        if not self._running:
            self.stop_event.clear()
            self.setup()
            self.scheduler.start()
            self._running = True
            logger.info("Scheduler started.")

    def stop(self) -> None:
        """Signal running passes to stop and wait for them."""
        if self._running:
            self.stop_event.set()
            self.scheduler.shutdown(wait=True)
            self._running = False
            logger.info("Scheduler stopped.")

    @property
    def is_running(self) -> bool:
        return self._running

    def get_jobs(self) -> List[Any]:
        """Return list of scheduled jobs."""
        return self.scheduler.get_jobs()
