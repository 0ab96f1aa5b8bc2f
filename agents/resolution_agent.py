"""Resolution Monitor agents.

Two independent passes drive mirror markets to resolution:

Detection (``resolution_detect``, every 60s)
    For each stored market that is resolved but has no outcome yet, ask
    the owning provider for the outcome. A definitive YES/NO is written
    back, and if an unresolved mirror market tracks it a resolution
    action is reserved ``delay`` ahead and registered with the executor.

Execution (``resolution_execute``, every 60s)
    Claims due actions through conditional status updates
    (pending -> ready -> executing), asks the executor to resolve, then
    marks them done or failed. Failed actions stay failed and go to
    Slack for an operator.

Reservation relies on the partial unique index over open actions, so
repeated or overlapping detection passes never create a second action
for the same market.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .base import AgentResult, AgentStatus, BaseAgent
from clients.base import ProviderClient
from clients.errors import ExecutorError, ProviderError
from clients.executor_client import ExecutorClient
from db.models import ActionStatus, MirrorMarket, Outcome, ScheduledResolutionAction
from db.queries import MarketQueries

logger = logging.getLogger(__name__)

_DEFINITIVE = (Outcome.YES, Outcome.NO)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PassReport:
    checked: int = 0
    resolved: int = 0
    scheduled: int = 0
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


class ResolutionMonitor:
    """Detection and execution passes over scheduled resolution actions."""

    def __init__(self, queries: MarketQueries,
                 providers: Dict[str, ProviderClient],
                 executor: Optional[ExecutorClient] = None,
                 notifier: Any = None,
                 delay: timedelta = timedelta(minutes=5),
                 clock: Callable[[], datetime] = _utc_now,
                 detection_batch: int = 50,
                 execution_batch: int = 10) -> None:
        self.queries = queries
        self.providers = providers
        self.executor = executor
        self.notifier = notifier
        self.delay = delay
        self._clock = clock
        self.detection_batch = detection_batch
        self.execution_batch = execution_batch

    @classmethod
    def from_context(cls, context: Dict[str, Any]) -> ResolutionMonitor:
        config = context.get("config")
        resolution = getattr(config, "resolution", None)
        kwargs: Dict[str, Any] = {}
        if resolution is not None:
            kwargs = dict(
                delay=timedelta(minutes=resolution.delay_minutes),
                detection_batch=resolution.detection_batch,
                execution_batch=resolution.execution_batch,
            )
        return cls(
            queries=context["queries"],
            providers=context.get("providers") or {},
            executor=context.get("executor"),
            notifier=context.get("slack_notifier"),
            **kwargs,
        )

    def _alert_failure(self, action: Dict[str, Any], error: str) -> None:
        logger.error(
            "Resolution action %s for %s:%s failed: %s", action.get("id"),
            action.get("oracle_source"), action.get("external_market_id"), error,
        )
        if self.notifier is not None:
            self.notifier.notify_resolution_failure(action, error)

    # ── Detection ────────────────────────────────────────────

    def detect_and_schedule(self) -> PassReport:
        report = PassReport()
        for row in self.queries.get_resolved_without_outcome(self.detection_batch):
            provider, native_id = row["provider"], row["native_id"]
            adapter = self.providers.get(provider)
            if adapter is None:
                report.skipped += 1
                continue
            report.checked += 1
            try:
                outcome = adapter.get_outcome(native_id)
            except ProviderError as e:
                logger.warning("Outcome lookup %s %s failed: %s", provider, native_id, e)
                report.errors.append(f"{provider}:{native_id}: {e}")
                continue
            if not outcome.resolved or outcome.outcome is None:
                continue

            self.queries.set_market_outcome(row["id"], outcome.outcome)
            report.resolved += 1
            logger.info("%s %s resolved %s", provider, native_id, outcome.outcome.value)
            if outcome.outcome not in _DEFINITIVE:
                continue

            if self._schedule(row, outcome.outcome, report):
                report.scheduled += 1
        return report

    def _schedule(self, market: Dict[str, Any], outcome: Outcome,
                  report: PassReport) -> bool:
        provider, native_id = market["provider"], market["native_id"]
        mirror = self.queries.find_unresolved_mirror(provider, native_id)
        if mirror is None:
            return False
        if self.executor is None or not self.executor.enabled:
            logger.warning("No executor configured, not scheduling %s %s", provider, native_id)
            return False

        scheduled_for = self._clock() + self.delay
        action = ScheduledResolutionAction(
            market_id=market["id"],
            external_market_id=native_id,
            mirror_key=mirror.mirror_key,
            oracle_source=provider,
            outcome=outcome.value,
            scheduled_for=scheduled_for.astimezone(timezone.utc).isoformat(timespec="microseconds"),
        )
        action_id = self.queries.reserve_action(action)
        if action_id is None:
            logger.info("Open resolution action already exists for %s %s", provider, native_id)
            return False

        try:
            executor_id = self.executor.create_action(
                native_id, mirror.mirror_key, scheduled_for, provider,
            )
        except ExecutorError as e:
            self.queries.transition_action(
                action_id, ActionStatus.PENDING, ActionStatus.FAILED, error=str(e),
            )
            report.failed += 1
            report.errors.append(f"{provider}:{native_id}: {e}")
            self._alert_failure(self.queries.get_action(action_id) or {}, str(e))
            return False

        self.queries.set_executor_action_id(action_id, executor_id)
        logger.info(
            "Scheduled resolution %d (%s) for %s %s -> %s at %s", action_id,
            executor_id, provider, native_id, outcome.value, action.scheduled_for,
        )
        return True

    # ── Execution ────────────────────────────────────────────

    def execute_due(self) -> PassReport:
        report = PassReport()
        for action in self.queries.get_due_actions(self._clock(), self.execution_batch):
            action_id = action["id"]
            # Another poller may hold either step; losing the claim is fine
            if not self.queries.transition_action(action_id, ActionStatus.PENDING, ActionStatus.READY):
                report.skipped += 1
                continue
            if not self.queries.transition_action(action_id, ActionStatus.READY, ActionStatus.EXECUTING):
                report.skipped += 1
                continue
            report.checked += 1

            error = self._execute(action)
            if error is None:
                self.queries.transition_action(action_id, ActionStatus.EXECUTING, ActionStatus.DONE)
                self.queries.upsert_mirror_market(MirrorMarket(
                    mirror_key=action["mirror_key"],
                    provider=action["oracle_source"],
                    native_id=action["external_market_id"],
                    resolved=True,
                ))
                report.executed += 1
                continue

            self.queries.transition_action(
                action_id, ActionStatus.EXECUTING, ActionStatus.FAILED, error=error,
            )
            report.failed += 1
            report.errors.append(f"action {action_id}: {error}")
            self._alert_failure(action, error)
        return report

    def _execute(self, action: Dict[str, Any]) -> Optional[str]:
        """Run one claimed action. Returns an error message, or None on success."""
        if self.executor is None:
            return "no executor configured"
        executor_id = action.get("executor_action_id")
        if not executor_id:
            return "action was never registered with the executor"
        try:
            self.executor.execute_action(executor_id)
        except ExecutorError as e:
            return str(e)
        logger.info("Executed resolution %s (%s)", action["id"], executor_id)
        return None


def _monitor(context: Dict[str, Any]) -> ResolutionMonitor:
    monitor = context.get("resolution_monitor")
    if monitor is None:
        monitor = ResolutionMonitor.from_context(context)
        context["resolution_monitor"] = monitor
    return monitor


class ResolutionDetectAgent(BaseAgent):
    def __init__(self, config: Any = None) -> None:
        super().__init__(name="resolution_detect", config=config)

    def execute(self, context: Dict[str, Any]) -> AgentResult:
        report = _monitor(context).detect_and_schedule()
        error_summary = f" ({len(report.errors)} errors)" if report.errors else ""
        return AgentResult(
            agent_name=self.name,
            status=AgentStatus.SUCCESS,
            items_processed=report.scheduled,
            summary=(
                f"Checked {report.checked} markets, {report.resolved} resolved, "
                f"{report.scheduled} scheduled{error_summary}."
            ),
            data={
                "checked": report.checked,
                "resolved": report.resolved,
                "scheduled": report.scheduled,
                "failed": report.failed,
                "errors": report.errors[:10],
            },
        )


class ResolutionExecuteAgent(BaseAgent):
    def __init__(self, config: Any = None) -> None:
        super().__init__(name="resolution_execute", config=config)

    def execute(self, context: Dict[str, Any]) -> AgentResult:
        report = _monitor(context).execute_due()
        return AgentResult(
            agent_name=self.name,
            status=AgentStatus.SUCCESS,
            items_processed=report.executed,
            summary=f"Executed {report.executed} resolutions, {report.failed} failed.",
            data={
                "executed": report.executed,
                "failed": report.failed,
                "skipped": report.skipped,
                "errors": report.errors[:10],
            },
        )
