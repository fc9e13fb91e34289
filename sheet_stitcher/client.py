"""
client.py — HTTP boundary to the schema/cleaning AI service

Only transport lives here: the service returns text, and every other module
works on that text after it has been saved. Rate-limit failures are retried
with a fixed wait; anything else propagates on the first failure.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, TypeVar

import requests

from sheet_stitcher.config import StitchConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 300
RATE_LIMIT_MAX_ATTEMPTS = 3
RATE_LIMIT_WAIT_SECONDS = 45


def is_rate_limit_error(exc: BaseException) -> bool:
    response = getattr(exc, "response", None)
    if response is not None and getattr(response, "status_code", None) == 429:
        return True
    message = str(exc).lower()
    return "429" in message or "quota" in message or "rate" in message


def call_with_rate_limit_retry(
    func: Callable[[], T],
    *,
    max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
    wait_seconds: float = RATE_LIMIT_WAIT_SECONDS,
    sleep: Callable[[float], Any] = time.sleep,
    label: str = "request",
) -> T:
    """
    Call ``func`` up to ``max_attempts`` times, waiting ``wait_seconds``
    between attempts only when the failure is a rate limit.
    """
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:
            if not is_rate_limit_error(exc) or attempt >= max_attempts:
                raise
            logger.warning(
                "Rate limit hit for %s (attempt %d/%d); waiting %ss before retrying",
                label, attempt, max_attempts, wait_seconds,
            )
            sleep(wait_seconds)
            attempt += 1


class AIServiceClient:
    """Thin requests.Session wrapper around the architect and cleaner endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        email: str | None = None,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("AI service base URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if email and api_key:
            self.session.headers.update({"X-Email": email, "X-API-Key": api_key})

    @classmethod
    def from_config(cls, config: StitchConfig, **kwargs) -> "AIServiceClient":
        return cls(config.api_base_url, email=config.api_email, api_key=config.api_key, **kwargs)

    def _post(self, path: str, payload: dict[str, Any]) -> str:
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        if isinstance(data, dict):
            text = data.get("result") or data.get("response")
            if isinstance(text, str):
                return text
        return json.dumps(data)

    def process_architect(
        self,
        user_data: str,
        *,
        sample_size: int,
        custom_instructions: str | None = None,
        model: str | None = None,
    ) -> str:
        payload = {
            "userData": user_data,
            "sampleSize": sample_size,
            "customInstructions": custom_instructions,
            "model": model,
        }
        return call_with_rate_limit_retry(
            lambda: self._post("/api/architect/process", payload),
            sleep=self.sleep,
            label="architect",
        )

    def process_cleaner(
        self,
        column_data: str,
        column_schema: str,
        scoped_semantic_diff: str,
        *,
        model: str | None = None,
    ) -> str:
        payload = {
            "columnData": column_data,
            "columnSchema": column_schema,
            "scopedSemanticDiff": scoped_semantic_diff,
            "model": model,
        }
        return call_with_rate_limit_retry(
            lambda: self._post("/api/cleaner/process", payload),
            sleep=self.sleep,
            label="cleaner",
        )
