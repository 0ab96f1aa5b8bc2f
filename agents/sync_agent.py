"""Market Sync Agent (reconciliation engine).

Pulls every provider's active-market listing, normalizes each market to
the canonical shape, and upserts it with change detection:

- no stored row                       -> insert   ("added")
- price, volume or status differ      -> update   ("updated")
- otherwise                           -> no write ("unchanged")

Each provider run writes exactly one sync_logs row, success or failure.
Providers run concurrently on a thread pool, each inside its own error
boundary, so one provider's outage never blocks the others. A provider
whose previous run is still in flight is skipped rather than doubled up.

Markets that dropped out of the active listing are re-fetched one by one
(bounded, closed markets first) so closed and resolved statuses still
reach the store. One market failing to refresh never fails the run.

Schedule: every 5 minutes, plus one run at startup.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .base import AgentResult, AgentStatus, BaseAgent
from clients.base import ProviderClient
from clients.errors import CircuitOpenError, ProviderError
from db.models import SyncLogEntry
from db.queries import ADDED, UPDATED, MarketQueries

logger = logging.getLogger(__name__)

_DEFAULT_MAX_PAGES = 20
_DEFAULT_REFRESH_LIMIT = 50


@dataclass
class SyncReport:
    provider: str
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    pages: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    skipped: bool = False
    refreshed: int = 0
    refresh_errors: int = 0
    seen: Set[str] = field(default_factory=set, repr=False)

    @property
    def touched(self) -> int:
        return self.added + self.updated

    @property
    def ok(self) -> bool:
        return self.error is None

    def count(self, change: str) -> None:
        if change == ADDED:
            self.added += 1
        elif change == UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1


class SyncAgent(BaseAgent):
    def __init__(self, config: Any = None,
                 max_pages: Optional[int] = None,
                 refresh_limit: int = _DEFAULT_REFRESH_LIMIT) -> None:
        super().__init__(name="sync", config=config)
        if max_pages is None:
            max_pages = config.sync.max_pages if config is not None else _DEFAULT_MAX_PAGES
        self.max_pages = max_pages
        self.refresh_limit = refresh_limit
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _provider_lock(self, provider: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(provider, threading.Lock())

    def is_running(self, provider: str) -> bool:
        return self._provider_lock(provider).locked()

    # ── Single provider ──────────────────────────────────────

    def sync_provider(self, adapter: ProviderClient, queries: MarketQueries,
                      stop_event: Optional[threading.Event] = None) -> SyncReport:
        """Run one full sync for ``adapter``; a no-op if one is already running."""
        lock = self._provider_lock(adapter.name)
        if not lock.acquire(blocking=False):
            logger.info("Sync for %s already in progress, skipping", adapter.name)
            return SyncReport(provider=adapter.name, skipped=True)
        try:
            return self._sync(adapter, queries, stop_event)
        finally:
            lock.release()

    def _sync(self, adapter: ProviderClient, queries: MarketQueries,
              stop_event: Optional[threading.Event]) -> SyncReport:
        started = time.monotonic()
        report = SyncReport(provider=adapter.name)
        try:
            exhausted = self._sync_listing(adapter, queries, report, stop_event)
            if exhausted:
                self._refresh_unlisted(adapter, queries, report, stop_event)
        except Exception as exc:
            report.error = str(exc)
            logger.error(
                "Sync for %s failed after %d pages: %s", adapter.name, report.pages, exc,
            )
        report.duration_seconds = time.monotonic() - started

        queries.insert_sync_log(SyncLogEntry(
            provider=adapter.name,
            status="success" if report.ok else "failed",
            markets_added=report.added,
            markets_updated=report.updated,
            markets_unchanged=report.unchanged,
            records_touched=report.touched,
            pages_fetched=report.pages,
            duration_seconds=round(report.duration_seconds, 3),
            error=report.error,
        ))
        logger.info(
            "Sync %s: %d added, %d updated, %d unchanged in %d pages (%.1fs)",
            adapter.name, report.added, report.updated, report.unchanged,
            report.pages, report.duration_seconds,
        )
        return report

    def _sync_listing(self, adapter: ProviderClient, queries: MarketQueries,
                      report: SyncReport,
                      stop_event: Optional[threading.Event]) -> bool:
        """Walk the listing pages in order. True if the listing was exhausted."""
        token: Optional[str] = None
        while report.pages < self.max_pages:
            if stop_event is not None and stop_event.is_set():
                logger.info("Sync for %s stopped after %d pages", adapter.name, report.pages)
                return False
            markets, token = adapter.list_active(token)
            report.pages += 1
            for raw in markets:
                market = adapter.normalize(raw)
                _, change = queries.upsert_market(market)
                report.count(change)
                report.seen.add(market.native_id)
            if not token:
                return True
        logger.warning("Sync for %s hit the %d page cap", adapter.name, self.max_pages)
        return False

    def _refresh_unlisted(self, adapter: ProviderClient, queries: MarketQueries,
                          report: SyncReport,
                          stop_event: Optional[threading.Event]) -> None:
        stale = [
            row for row in queries.get_refresh_candidates(adapter.name)
            if row["native_id"] not in report.seen
        ]
        for row in stale[:self.refresh_limit]:
            if stop_event is not None and stop_event.is_set():
                return
            native_id = row["native_id"]
            try:
                raw = adapter.get_one(native_id)
                if raw is None:
                    continue
                _, change = queries.upsert_market(adapter.normalize(raw))
            except CircuitOpenError as exc:
                logger.warning("Refresh for %s stopped, circuit open: %s", adapter.name, exc)
                report.refresh_errors += 1
                return
            except ProviderError as exc:
                logger.warning("Refresh %s %s failed: %s", adapter.name, native_id, exc)
                report.refresh_errors += 1
                continue
            report.count(change)
            report.refreshed += 1

    # ── All providers ────────────────────────────────────────

    def execute(self, context: Dict[str, Any]) -> AgentResult:
        queries = context["queries"]
        providers: Dict[str, ProviderClient] = context.get("providers") or {}
        stop_event = context.get("stop_event")

        if not providers:
            return AgentResult(
                agent_name=self.name,
                status=AgentStatus.SUCCESS,
                summary="Skipped -- no providers configured.",
            )

        reports: List[SyncReport] = []
        errors: List[str] = []
        with ThreadPoolExecutor(max_workers=len(providers)) as executor:
            future_to_name = {
                executor.submit(self.sync_provider, adapter, queries, stop_event): name
                for name, adapter in providers.items()
            }
            for future in as_completed(future_to_name):
                name = future_to_name[future]
                try:
                    report = future.result()
                except Exception as exc:
                    # Only the sync log write can land here
                    logger.exception("Sync for %s crashed", name)
                    errors.append(f"{name}: {exc}")
                    continue
                reports.append(report)
                if report.error:
                    errors.append(f"{name}: {report.error}")

        touched = sum(r.touched for r in reports)
        error_summary = f" ({len(errors)} errors)" if errors else ""
        return AgentResult(
            agent_name=self.name,
            status=AgentStatus.SUCCESS,
            items_processed=touched,
            summary=(
                f"Synced {len(reports)} providers, {touched} markets written"
                f"{error_summary}."
            ),
            data={
                "providers": {
                    r.provider: {
                        "added": r.added,
                        "updated": r.updated,
                        "unchanged": r.unchanged,
                        "pages": r.pages,
                        "skipped": r.skipped,
                        "refreshed": r.refreshed,
                        "refresh_errors": r.refresh_errors,
                        "error": r.error,
                    }
                    for r in reports
                },
                "errors": errors[:10],
            },
        )
