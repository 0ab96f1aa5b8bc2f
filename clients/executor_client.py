"""Client for the scheduled-resolution executor API.

The executor owns the on-chain side: it records a scheduled resolution
and, when asked, submits the resolve transaction for the mirror market.

  POST {base}/scheduled-resolutions   create, returns resolution.id
  PUT  {base}/scheduled-resolutions   execute by resolutionId

The executor is its own failure domain, so nothing here retries.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from config import ResolutionConfig
from .errors import ExecutorError

logger = logging.getLogger(__name__)


class ExecutorClient:
    def __init__(self, config: ResolutionConfig,
                 session: Optional[requests.Session] = None,
                 timeout: float = 30.0) -> None:
        self.config = config
        self.url = f"{config.executor_url.rstrip('/')}/scheduled-resolutions"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if config.executor_api_key:
            self.session.headers.update({"Authorization": f"Bearer {config.executor_api_key}"})

    @property
    def enabled(self) -> bool:
        return bool(self.config.executor_url)

    def _call(self, method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.request(
                method, self.url, data=json.dumps(body), timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ExecutorError(f"{method} {self.url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ExecutorError(
                f"{method} {self.url} returned {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ExecutorError(f"{method} {self.url} returned invalid JSON") from exc
        if isinstance(data, dict) and data.get("success") is False:
            raise ExecutorError(data.get("error") or f"{method} {self.url} reported failure")
        return data if isinstance(data, dict) else {}

    def create_action(self, external_market_id: str, mirror_key: str,
                      scheduled_time: datetime, oracle_source: str) -> str:
        """Register a scheduled resolution and return the executor's id."""
        data = self._call("POST", {
            "externalMarketId": external_market_id,
            "mirrorKey": mirror_key,
            "scheduledTime": scheduled_time.isoformat(),
            "oracleSource": oracle_source,
        })
        resolution = data.get("resolution") or {}
        action_id = resolution.get("id")
        if action_id is None:
            raise ExecutorError("executor response missing resolution.id")
        logger.info("Executor scheduled resolution %s for %s", action_id, external_market_id)
        return str(action_id)

    def execute_action(self, action_id: str) -> Dict[str, Any]:
        """Trigger execution of a scheduled resolution. Raises ExecutorError on failure."""
        data = self._call("PUT", {"resolutionId": action_id})
        logger.info("Executor executed resolution %s", action_id)
        return data
