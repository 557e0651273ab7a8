"""
Rate-Limited REST Client
========================

Async JSON client for the venue's REST endpoints:
- Per-endpoint admission control through the shared RateLimiter
- Per-attempt timeouts
- Exponential backoff with jitter on 429, 5xx and network failures
- "No orderbook" 404s classified as a normal absent-market state
"""

import asyncio
import json
import random
import re
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import aiohttp

from .rate_limiter import RateLimiter, RateLimitTable
from ..utils.config import HttpConfig
from ..utils.errors import (
    HttpError,
    NetworkError,
    RateLimitError,
    ValidationError,
    error_body_message,
)
from ..utils.logger import get_logger

NO_ORDERBOOK_PATTERN = re.compile(r"no orderbook", re.IGNORECASE)


def backoff_delay_ms(attempt: int,
                     base_ms: float,
                     jitter_ms: float,
                     rng: random.Random,
                     cap_ms: Optional[float] = None) -> float:
    """``base * 2**attempt`` plus uniform jitter, optionally capped"""
    delay = base_ms * (2 ** attempt) + rng.uniform(0, jitter_ms)
    if cap_ms is not None:
        delay = min(cap_ms, delay)
    return delay


def should_retry(status: int) -> bool:
    return status == 429 or status >= 500


def is_no_orderbook_error(err: BaseException) -> bool:
    """True iff ``err`` is a 404 whose body says the instrument has no order book"""
    if not isinstance(err, HttpError) or err.status != 404:
        return False
    message = error_body_message(err.body) or err.message
    return bool(NO_ORDERBOOK_PATTERN.search(message))


def with_query(base: str, params: Mapping[str, Any]) -> str:
    """Append ``params`` to ``base``, skipping None values"""
    parts = urlsplit(base)
    query = parse_qsl(parts.query, keep_blank_values=True)
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        query.append((key, str(value)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _parse_body(text: str) -> Any:
    if not text:
        return ""
    try:
        return json.loads(text)
    except ValueError:
        return text


class HttpClient:
    """
    REST client gated by per-endpoint rate limits.

    Transient failures are retried here and never reach the caller unless
    every retry failed. The aiohttp session is injected, or created on
    first use and closed by ``close()``.
    """

    def __init__(self,
                 limiter: RateLimiter,
                 config: Optional[HttpConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.config = config or HttpConfig()
        self.limiter = limiter
        self.rate_limits = RateLimitTable.from_config(self.config)
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.logger = get_logger('http_client')

        self.stats = {
            'requests': 0,
            'retries': 0,
            'failures': 0,
        }

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={'User-Agent': self.config.user_agent})
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def fetch_json(self,
                         url: str,
                         method: str = "GET",
                         headers: Optional[Dict[str, str]] = None,
                         body: Any = None,
                         timeout_ms: Optional[int] = None,
                         retries: Optional[int] = None) -> Any:
        """
        Issue a request and decode its JSON body.

        Raises:
            HttpError: non-retryable status, or retryable status after all retries
            RateLimitError: 429 after all retries
            NetworkError: timeout / connection failure after all retries
            ValidationError: 2xx response whose body is not JSON
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self.config.timeout_ms
        retries = retries if retries is not None else self.config.retries
        rule = self.rate_limits.match(url)
        request_headers = {'content-type': 'application/json', **(headers or {})}
        data = json.dumps(body) if body is not None else None
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000.0)
        session = self._get_session()

        attempt = 0
        while True:
            await self.limiter.take(rule)
            self.stats['requests'] += 1

            try:
                async with session.request(method, url, headers=request_headers, data=data, timeout=timeout) as response:
                    status = response.status
                    text = (await response.read()).decode("utf-8", errors="replace")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt < retries:
                    await self._backoff(attempt, url, f"network error: {e!r}")
                    attempt += 1
                    continue
                self.stats['failures'] += 1
                raise NetworkError(f"{method} {url} failed after {attempt + 1} attempts: {e!r}", url=url,
                                   context={'attempts': attempt + 1, 'timeout_ms': timeout_ms}) from e

            if 200 <= status < 300:
                try:
                    return json.loads(text) if text else None
                except (ValueError, RecursionError) as e:
                    raise ValidationError(f"Invalid JSON from {url}", {'url': url, 'body': text[:200]}) from e

            if should_retry(status) and attempt < retries:
                await self._backoff(attempt, url, f"HTTP {status}")
                attempt += 1
                continue

            self.stats['failures'] += 1
            raise self._http_error(status, url, _parse_body(text))

    async def _backoff(self, attempt: int, url: str, reason: str):
        delay_ms = backoff_delay_ms(attempt, self.config.backoff_base_ms, self.config.backoff_jitter_ms, self._rng)
        self.stats['retries'] += 1
        self.logger.debug(f"Retrying {url} in {delay_ms:.0f}ms ({reason})")
        await self._sleep(delay_ms / 1000.0)

    def _http_error(self, status: int, url: str, payload: Any) -> HttpError:
        detail = error_body_message(payload)
        message = f"HTTP {status} for {url}: {detail}" if detail else f"HTTP {status} for {url}"
        error_cls = RateLimitError if status == 429 else HttpError
        error = error_cls(status, url, payload, message)
        # Absent books are a normal state and not worth more than a debug line.
        if not is_no_orderbook_error(error):
            self.logger.warning(message)
        return error
