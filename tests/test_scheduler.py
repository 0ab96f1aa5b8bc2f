"""Tests for the scheduler runner and Slack notifications."""

import json
from unittest.mock import MagicMock

import pytest

from agents.base import AgentResult, AgentStatus, BaseAgent
from agents.registry import AgentRegistry
from config import SchedulerConfig
from notifications.slack import SlackNotifier
from scheduler.runner import SchedulerRunner


class RecordingAgent(BaseAgent):
    def __init__(self, name, items=1, fail=False):
        super().__init__(name=name)
        self.items = items
        self.fail = fail
        self.contexts = []

    def execute(self, context):
        self.contexts.append(context)
        if self.fail:
            raise RuntimeError("pass failed")
        return AgentResult(agent_name=self.name, items_processed=self.items)


@pytest.fixture
def registry():
    registry = AgentRegistry()
    for name in ["sync", "resolution_detect", "resolution_execute", "whale", "arbitrage"]:
        registry.register(RecordingAgent(name))
    return registry


@pytest.fixture
def scheduler():
    return MagicMock()


class TestSchedulerRunner:
    def test_jobs_registered_with_single_instance(self, registry, scheduler):
        runner = SchedulerRunner(registry, dict, config=SchedulerConfig(), scheduler=scheduler)
        runner.setup()

        jobs = {c.kwargs["id"]: c.kwargs for c in scheduler.add_job.call_args_list}
        assert set(jobs) == {
            "agent_sync", "agent_resolution_detect", "agent_resolution_execute",
            "agent_whale", "agent_arbitrage",
        }
        for kwargs in jobs.values():
            assert kwargs["max_instances"] == 1
            assert kwargs["coalesce"] is True
        assert jobs["agent_sync"]["minutes"] == 5
        assert "next_run_time" in jobs["agent_sync"]
        assert jobs["agent_resolution_detect"]["seconds"] == 60
        assert "next_run_time" not in jobs["agent_whale"]

    def test_unregistered_agents_not_scheduled(self, scheduler):
        registry = AgentRegistry()
        registry.register(RecordingAgent("sync"))
        runner = SchedulerRunner(registry, dict, scheduler=scheduler)
        runner.setup()
        assert scheduler.add_job.call_count == 1

    def test_run_agent_passes_stop_event(self, registry, scheduler):
        runner = SchedulerRunner(registry, dict, scheduler=scheduler)
        runner._run_agent("whale")
        context = registry.get("whale").contexts[0]
        assert context["stop_event"] is runner.stop_event

    def test_run_agent_skipped_after_stop(self, registry, scheduler):
        runner = SchedulerRunner(registry, dict, scheduler=scheduler)
        runner.stop_event.set()
        runner._run_agent("whale")
        assert registry.get("whale").contexts == []

    def test_failures_do_not_escape(self, scheduler):
        registry = AgentRegistry()
        registry.register(RecordingAgent("sync", fail=True))
        broken_factory = MagicMock(side_effect=RuntimeError("no db"))
        SchedulerRunner(registry, dict, scheduler=scheduler)._run_agent("sync")
        SchedulerRunner(registry, broken_factory, scheduler=scheduler)._run_agent("sync")

    def test_slack_only_for_eventful_runs(self, scheduler):
        registry = AgentRegistry()
        registry.register(RecordingAgent("quiet", items=0))
        registry.register(RecordingAgent("busy", items=3))
        slack = MagicMock()
        runner = SchedulerRunner(registry, dict, scheduler=scheduler, slack_notifier=slack)
        runner._run_agent("quiet")
        runner._run_agent("busy")
        assert slack.notify_agent_run.call_count == 1

    def test_start_and_stop(self, registry, scheduler):
        runner = SchedulerRunner(registry, dict, scheduler=scheduler)
        runner.start()
        assert runner.is_running
        scheduler.start.assert_called_once()

        runner.stop()
        assert not runner.is_running
        assert runner.stop_event.is_set()
        scheduler.shutdown.assert_called_once_with(wait=True)


class TestSlackNotifier:
    @pytest.fixture
    def session(self):
        s = MagicMock()
        s.headers = {}
        s.post.return_value = MagicMock(status_code=200)
        return s

    def test_disabled_without_webhook(self, session):
        notifier = SlackNotifier("", session=session)
        assert notifier.notify_breaker_open("kalshi", 5, 30) is False
        session.post.assert_not_called()

    def test_agent_run_message(self, session):
        notifier = SlackNotifier("https://hooks.slack.com/x", session=session)
        result = AgentResult(agent_name="resolution_execute", status=AgentStatus.ERROR,
                             error="executor down", data={"errors": ["action 1: reverted"]})
        assert notifier.notify_agent_run(result) is True
        payload = json.loads(session.post.call_args.kwargs["data"])
        text = json.dumps(payload["blocks"])
        assert "Resolution Execute Agent Run" in text
        assert "executor down" in text
        assert "action 1: reverted" in text

    def test_resolution_failure_alert(self, session):
        notifier = SlackNotifier("https://hooks.slack.com/x", session=session)
        notifier.notify_resolution_failure(
            {"id": 3, "oracle_source": "kalshi", "external_market_id": "FED",
             "mirror_key": "mk", "outcome": "yes"},
            "reverted",
        )
        text = json.dumps(json.loads(session.post.call_args.kwargs["data"]))
        assert "kalshi:FED" in text
        assert "reverted" in text

    def test_non_200_reported(self, session):
        session.post.return_value = MagicMock(status_code=500, text="err")
        notifier = SlackNotifier("https://hooks.slack.com/x", session=session)
        assert notifier.notify_breaker_open("kalshi", 5, 30) is False
