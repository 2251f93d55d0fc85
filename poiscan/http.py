"""HTTP client with retry/backoff and request counters."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


@dataclass
class RequestMetrics:
    network_searches: int = 0
    cache_hits: int = 0
    cache_only_hits: int = 0
    cache_only_misses: int = 0
    hint_requests: int = 0
    feedback_posts: int = 0
    feedback_failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    _KINDS = (
        "network_searches",
        "cache_hits",
        "cache_only_hits",
        "cache_only_misses",
        "hint_requests",
        "feedback_posts",
        "feedback_failures",
    )

    def inc(self, kind: str, count: int = 1) -> None:
        if kind not in self._KINDS:
            raise ValueError(f"Unknown request kind: {kind}")
        with self._lock:
            setattr(self, kind, getattr(self, kind) + count)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {kind: getattr(self, kind) for kind in self._KINDS}


class HttpClient:
    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        retry_max: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        user_agent: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_max = max(1, int(retry_max))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.session = requests.Session()
        if user_agent:
            self.session.headers["User-Agent"] = user_agent

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        retry_max: Optional[int] = None,
    ) -> requests.Response:
        url = self.url(path)
        attempts = self.retry_max if retry_max is None else max(1, int(retry_max))
        for attempt in range(1, attempts + 1):
            try:
                resp = self.session.request(
                    method,
                    url,
                    params=params,
                    data=data,
                    json=json_body,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException:
                if attempt >= attempts:
                    raise
                self._sleep_backoff(attempt)
                continue

            status = resp.status_code
            if 200 <= status < 300:
                return resp

            if status in RETRYABLE_STATUSES:
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= attempts:
                    resp.raise_for_status()
                if not self._sleep_retry_after(resp):
                    self._sleep_backoff(attempt)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            resp.raise_for_status()

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        time.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True
