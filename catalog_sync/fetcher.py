import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3        # total attempts, including the first one
    base_delay: float = 1.0     # seconds
    max_delay: float = 30.0     # seconds
    retry_on_4xx: bool = False  # 429 is always retried


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay after the 0-indexed `attempt` failed: min(2**attempt * base_delay, max_delay)."""
    return min((2 ** attempt) * base_delay, max_delay)


class FetchError(Exception):
    def __init__(self, message: str, url: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class FetchClientError(FetchError):
    """4xx response (other than 429). Not retried unless retry_on_4xx is set."""


class InvalidPayload(FetchError):
    """The response body could not be decoded."""


class FetchExhausted(FetchError):
    def __init__(self, url: str, attempts: int, last_error: Exception):
        super().__init__(
            f"{url} failed after {attempts} attempts: {last_error}",
            url,
            getattr(last_error, 'status_code', None),
        )
        self.attempts = attempts
        self.last_error = last_error


class RateLimiter:
    """
    Fixed-window rate limiter (thread-safe).

    Allows up to `rate` requests per 1-second window.
    The window starts on the first request. While tokens remain, requests
    proceed immediately. When the bucket is empty, the limiter sleeps until
    the current window expires, then opens a fresh window with a full bucket.
    """

    def __init__(self, rate: int):
        self._rate = rate
        self._tokens = rate
        self._window_start = None   # window starts lazily on first request
        self._lock = Lock()

    def acquire(self):
        with self._lock:
            now = time.monotonic()

            if self._window_start is None or (now - self._window_start) >= 1.0:
                self._window_start = now
                self._tokens = self._rate

            if self._tokens > 0:
                self._tokens -= 1
            else:
                wait = 1.0 - (now - self._window_start)
                if wait > 0:
                    time.sleep(wait)
                self._window_start = time.monotonic()
                self._tokens = self._rate - 1   # consume 1 token for this request


class ResilientFetcher:
    """
    HTTP access to the supplier feed and to HTTP-backed sinks.

    Built once per process around an injected `requests.Session` and handed to
    every component that talks HTTP.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = DEFAULT_TIMEOUT,
        rate_limit: Optional[int] = None,
    ):
        self._session = session or requests.Session()
        self._retry_config = retry_config or RetryConfig()
        self._timeout = timeout
        self._rate_limiter = RateLimiter(rate_limit) if rate_limit else None

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    def fetch_with_retry(
        self,
        url: str,
        method: str = 'GET',
        retry_config: Optional[RetryConfig] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> requests.Response:
        config = retry_config or self._retry_config
        timeout = timeout if timeout is not None else self._timeout
        last_error: Optional[Exception] = None

        for attempt in range(config.max_retries):
            is_last = attempt == config.max_retries - 1
            if self._rate_limiter is not None:
                self._rate_limiter.acquire()

            try:
                response = self._session.request(method, url, timeout=timeout, **kwargs)
            except requests.RequestException as exc:
                last_error = exc
                wait = backoff_delay(attempt, config.base_delay, config.max_delay)
                reason = f"network error: {exc}"
            else:
                status = response.status_code
                if status < 400:
                    if attempt > 0:
                        logger.info("%s %s succeeded on attempt %d.", method, url, attempt + 1)
                    return response

                last_error = FetchError(f"HTTP {status} {response.reason or ''}".strip(), url, status)
                if status == 429:
                    retry_after = self._parse_retry_after(response)
                    wait = (
                        retry_after if retry_after is not None
                        else backoff_delay(attempt, config.base_delay, config.max_delay)
                    )
                    reason = "429 Too Many Requests"
                elif status >= 500:
                    wait = backoff_delay(attempt, config.base_delay, config.max_delay)
                    reason = f"server error {status}"
                elif config.retry_on_4xx:
                    wait = backoff_delay(attempt, config.base_delay, config.max_delay)
                    reason = f"client error {status}"
                else:
                    raise FetchClientError(
                        f"Client error {status} for {method} {url}", url, status,
                    )

            if is_last:
                break
            logger.warning(
                "%s on %s %s (attempt %d/%d). Waiting %.1fs before retry.",
                reason, method, url, attempt + 1, config.max_retries, wait,
            )
            time.sleep(wait)

        logger.error(
            "%s %s failed after %d attempts: %s", method, url, config.max_retries, last_error,
        )
        raise FetchExhausted(url, config.max_retries, last_error)

    def fetch_json(self, url: str, retry_config: Optional[RetryConfig] = None,
                   timeout: Optional[float] = None, **kwargs):
        response = self.fetch_with_retry(url, retry_config=retry_config, timeout=timeout, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidPayload(f"Invalid JSON from {url}: {exc}", url, response.status_code) from exc

    def fetch_text(self, url: str, retry_config: Optional[RetryConfig] = None,
                   timeout: Optional[float] = None, **kwargs) -> str:
        response = self.fetch_with_retry(url, retry_config=retry_config, timeout=timeout, **kwargs)
        # text/plain without a charset would otherwise be decoded as ISO-8859-1
        if 'charset' not in response.headers.get('Content-Type', '').lower():
            response.encoding = 'utf-8'
        return response.text

    def fetch_buffer(self, url: str, retry_config: Optional[RetryConfig] = None,
                     timeout: Optional[float] = None, **kwargs) -> bytes:
        response = self.fetch_with_retry(url, retry_config=retry_config, timeout=timeout, **kwargs)
        return response.content

    def head(self, url: str, retry_config: Optional[RetryConfig] = None,
             timeout: Optional[float] = None, **kwargs) -> requests.Response:
        return self.fetch_with_retry(url, method='HEAD', retry_config=retry_config, timeout=timeout, **kwargs)

    def close(self):
        self._session.close()

    @staticmethod
    def _parse_retry_after(response: requests.Response):
        """Return float seconds from Retry-After header, or None if absent/invalid."""
        header = response.headers.get('Retry-After')
        if header is None:
            return None
        try:
            return max(float(header), 0.0)
        except (TypeError, ValueError):
            return None
