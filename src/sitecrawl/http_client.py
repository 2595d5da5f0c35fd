from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import requests
from requests import exceptions as req_exc

from .errors import FetchError

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_STATUSES = {429, 500, 502, 503, 504}


def _retry_after_seconds(headers: dict[str, str]) -> float | None:
    retry_after = headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status_code: int
    headers: dict[str, str]
    fetched_at: float
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpClient:
    def __init__(
        self,
        session: requests.Session,
        *,
        timeout_s: float = 45,
        max_retries: int = 2,
        backoff_base_s: float = 1.0,
        user_agent: str | None = None,
    ) -> None:
        self._session = session
        self._timeout_s = timeout_s
        self._max_retries = max_retries
        self._backoff_base_s = backoff_base_s
        if user_agent:
            self._session.headers["User-Agent"] = user_agent

    def get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        gate: Callable[[], bool] | None = None,
    ) -> FetchResult:
        """GET ``url``, retrying transient failures.

        ``gate`` is called before every attempt, retries included, and must
        return True for the request to go out. A refusal ends the call with
        ``FetchError``.
        """

        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if gate is not None and not gate():
                logger.debug("GET %s not sent, no send slot", url)
                break
            try:
                resp = self._session.get(url, timeout=self._timeout_s, headers=headers)

                if (
                    resp.status_code in TRANSIENT_HTTP_STATUSES
                    and attempt < self._max_retries
                ):
                    retry_after = _retry_after_seconds(dict(resp.headers))
                    wait_s = (
                        retry_after
                        if retry_after is not None
                        else self._backoff_base_s * (2**attempt)
                    )
                    logger.debug(
                        "GET %s -> %s, retrying in %.1fs", url, resp.status_code, wait_s
                    )
                    time.sleep(wait_s)
                    continue

                # Non-2xx responses are returned; callers decide what they mean.
                return FetchResult(
                    url=url,
                    final_url=str(resp.url),
                    status_code=int(resp.status_code),
                    headers={k: str(v) for k, v in resp.headers.items()},
                    fetched_at=time.time(),
                    body=resp.content,
                )
            except req_exc.RequestException as e:
                last_error = e
                if attempt >= self._max_retries:
                    break
                time.sleep(self._backoff_base_s * (2**attempt))

        raise FetchError(url, last_error)

    def close(self) -> None:
        self._session.close()
