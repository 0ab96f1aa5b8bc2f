#!/usr/bin/env python3
"""Standalone CLI to run the market pipeline agents.

Usage:
    python run_agent.py <agent_name> [agent_name ...]
    python run_agent.py sync arbitrage whale
    python run_agent.py --all
    python run_agent.py --schedule

Single runs suit cron jobs and manual checks; --schedule keeps every
agent on its interval until interrupted.
"""

import logging
import signal
import sys
import threading
from datetime import timedelta

from config import load_config
from db.database import DatabaseManager
from db.queries import MarketQueries
from agents.registry import AgentRegistry
from agents.sync_agent import SyncAgent
from agents.arbitrage_agent import ArbitrageAgent
from agents.whale_agent import WhaleAgent
from agents.resolution_agent import (
    ResolutionDetectAgent, ResolutionExecuteAgent, ResolutionMonitor,
)
from clients.circuit_breaker import CircuitBreaker
from clients.executor_client import ExecutorClient
from clients.kalshi_client import KalshiClient
from clients.opinion_client import OpinionClient
from clients.polymarket_client import PolymarketClient
from clients.rate_governor import RateGovernor
from notifications.slack import SlackNotifier
from scheduler.runner import SchedulerRunner

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

AGENT_CLASSES = {
    "sync": SyncAgent,
    "arbitrage": ArbitrageAgent,
    "whale": WhaleAgent,
    "resolution_detect": ResolutionDetectAgent,
    "resolution_execute": ResolutionExecuteAgent,
}


def _breaker(name, limits, slack):
    return CircuitBreaker(
        name,
        failure_threshold=limits.breaker_threshold,
        cooldown_seconds=limits.breaker_cooldown_seconds,
        backoff_multiplier=limits.breaker_backoff_multiplier,
        max_cooldown_seconds=limits.breaker_max_cooldown_seconds,
        on_open=slack.notify_breaker_open,
    )


def build_providers(config, governor, slack):
    """Construct one adapter per configured provider, sharing the governor."""
    providers = {}

    providers["polymarket"] = PolymarketClient(
        config.polymarket, governor=governor,
        breaker=_breaker("polymarket", config.polymarket.limits, slack),
    )

    if config.kalshi.enabled:
        try:
            providers["kalshi"] = KalshiClient(
                config.kalshi, governor=governor,
                breaker=_breaker("kalshi", config.kalshi.limits, slack),
            )
        except (OSError, ValueError) as e:
            logger.warning("Kalshi client init failed: %s", e)
    else:
        logger.info("Kalshi credentials not set, skipping provider")

    if config.opinion.api_key:
        providers["opinion"] = OpinionClient(
            config.opinion, governor=governor,
            breaker=_breaker("opinion", config.opinion.limits, slack),
        )
    else:
        logger.info("Opinion API key not set, skipping provider")

    return providers


def build_context(config):
    """Build the shared context dict that agents expect."""
    db = DatabaseManager(db_path=config.db_path, database_url=config.database_url)
    queries = MarketQueries(db)
    slack = SlackNotifier(config.slack.webhook_url)
    governor = RateGovernor()
    providers = build_providers(config, governor, slack)
    executor = ExecutorClient(config.resolution) if config.resolution.executor_url else None

    monitor = ResolutionMonitor(
        queries=queries,
        providers=providers,
        executor=executor,
        notifier=slack,
        delay=timedelta(minutes=config.resolution.delay_minutes),
        detection_batch=config.resolution.detection_batch,
        execution_batch=config.resolution.execution_batch,
    )

    return {
        "config": config,
        "db": db,
        "queries": queries,
        "governor": governor,
        "providers": providers,
        "executor": executor,
        "resolution_monitor": monitor,
        "slack_notifier": slack,
    }


def build_registry(config, agent_names):
    return AgentRegistry.build(AGENT_CLASSES, agent_names, config=config)


def run_scheduled(config, context):
    registry = build_registry(config, list(AGENT_CLASSES))
    runner = SchedulerRunner(
        registry,
        context_factory=lambda: dict(context),
        config=config.scheduler,
        slack_notifier=context["slack_notifier"],
    )
    done = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        done.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    runner.start()
    try:
        done.wait()
    finally:
        runner.stop()


def main():
    if len(sys.argv) < 2:
        print("Usage: python run_agent.py <agent_name> [agent_name ...]")
        print("       python run_agent.py --all")
        print("       python run_agent.py --schedule")
        print(f"Available agents: {', '.join(AGENT_CLASSES.keys())}")
        sys.exit(1)

    config = load_config()

    if "--schedule" in sys.argv:
        run_scheduled(config, build_context(config))
        return

    # Determine which agents to run
    if "--all" in sys.argv:
        agent_names = list(AGENT_CLASSES.keys())
    else:
        agent_names = sys.argv[1:]

    # Validate agent names
    for name in agent_names:
        if name not in AGENT_CLASSES:
            print(f"Unknown agent: {name}")
            print(f"Available: {', '.join(AGENT_CLASSES.keys())}")
            sys.exit(1)

    context = build_context(config)
    registry = build_registry(config, agent_names)

    failed = False
    for result in registry.run_many(context):
        name = result.agent_name
        logger.info(
            "Agent '%s' completed: %s (%d items in %.1fs)",
            name, result.status.value,
            result.items_processed, result.duration_seconds,
        )
        if result.error:
            logger.error("Agent '%s' error: %s", name, result.error)
            failed = True

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
