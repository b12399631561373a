"""Validate, filter and liveness-check candidate web links.

Links come from the generator (inline in the answer or as provider-side
search citations). Only absolute http(s) URLs on the allowed domain suffix
survive, and only those that answer a probe are returned to the client.

Probe policy, per URL:

    HEAD -> 2xx/3xx                  live (redirects are not followed)
         -> 403/405  -> GET          live if GET is 2xx/3xx, else dead
         -> other status             dead
    URL the client cannot build      dead, no retry
    network error / timeout          retry whole probe after a fixed backoff
    still failing                    assumed live on the allowed domain (when
                                     enabled), dead otherwise

Network problems never escape this module; callers always get a list.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional
from urllib.parse import unquote, urlparse

import httpx

LOGGER = logging.getLogger("catalog.verify")

ALLOWED_SCHEMES = ("http", "https")
MIN_HOSTNAME_LENGTH = 3
GET_FALLBACK_STATUSES = (403, 405)
DEFAULT_HEADERS = {"User-Agent": "catalog-assistant-linkcheck/1.0"}


# ---------------------------
# Syntax and domain filters (no I/O)
# ---------------------------

def _hostname(url: str) -> Optional[str]:
    try:
        parsed = urlparse(url)
        parsed.port  # raises ValueError on a malformed port
    except ValueError:
        return None
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return None
    host = parsed.hostname or ""
    if len(host) < MIN_HOSTNAME_LENGTH or any(ch.isspace() for ch in host):
        return None
    try:
        # the client decodes xn-- labels when it builds the request
        httpx.URL(url).host
    except (httpx.InvalidURL, ValueError):
        return None
    return host


def is_valid(url: str) -> bool:
    if not isinstance(url, str):
        return False
    return _hostname(url) is not None


def clean(raw: str) -> str:
    """Trim and, if that alone does not give a valid URL, try one percent-decoding pass.

    Returns the trimmed input when neither form is valid. Never raises.
    """
    if not isinstance(raw, str):
        return ""
    trimmed = raw.strip()
    if is_valid(trimmed):
        return trimmed
    decoded = unquote(trimmed).strip()
    if decoded != trimmed and is_valid(decoded):
        return decoded
    return trimmed


def is_allowed_domain(url: str, suffix: str) -> bool:
    if not isinstance(url, str):
        return False
    host = _hostname(url)
    if host is None:
        return False
    return host.lower().endswith((suffix or "").lower())


# ---------------------------
# Probe results
# ---------------------------

class Liveness(str, Enum):
    LIVE = "live"
    ASSUMED_LIVE = "assumed_live"
    DEAD = "dead"

    @property
    def counts_as_live(self) -> bool:
        return self is not Liveness.DEAD


class ProbeStep(str, Enum):
    HEAD = "head"
    GET = "get"


@dataclass
class VerificationResult:
    url: str
    outcome: Liveness
    status_code: Optional[int] = None
    step: Optional[ProbeStep] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.outcome.counts_as_live


# ---------------------------
# Verifier
# ---------------------------

class UrlVerifier:
    def __init__(
        self,
        allowed_suffix: str = ".ae",
        probe_timeout: float = 8.0,
        get_timeout: float = 15.0,
        max_batch_size: int = 10,
        max_retries: int = 1,
        retry_backoff: float = 1.0,
        concurrency: int = 3,
        assume_live_on_failure: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.allowed_suffix = allowed_suffix
        self.probe_timeout = probe_timeout
        self.get_timeout = get_timeout
        self.max_batch_size = max(1, int(max_batch_size))
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff = retry_backoff
        self.concurrency = max(1, int(concurrency))
        self.assume_live_on_failure = assume_live_on_failure
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.probe_timeout,
            # a 3xx answer is itself the liveness signal
            follow_redirects=False,
            headers=DEFAULT_HEADERS,
            transport=self._transport,
        )

    def candidates(self, urls: Iterable[str]) -> List[str]:
        """Clean, dedupe and filter, capped at max_batch_size. Input order is kept."""
        if isinstance(urls, (str, bytes)) or not isinstance(urls, Iterable):
            raise TypeError("urls must be an iterable of str")
        seen = set()
        out: List[str] = []
        for raw in urls:
            if not isinstance(raw, str):
                LOGGER.debug("Skipping non-string link candidate: %r", raw)
                continue
            url = clean(raw)
            if url in seen:
                continue
            seen.add(url)
            if not is_valid(url):
                LOGGER.debug("Dropping malformed link: %r", raw)
                continue
            if not is_allowed_domain(url, self.allowed_suffix):
                LOGGER.debug("Dropping link outside %s: %s", self.allowed_suffix, url)
                continue
            out.append(url)
        if len(out) > self.max_batch_size:
            LOGGER.info("Capping link verification at %d of %d candidates", self.max_batch_size, len(out))
            out = out[: self.max_batch_size]
        return out

    async def _status(self, client: httpx.AsyncClient, url: str) -> tuple[int, ProbeStep]:
        step = ProbeStep.HEAD
        resp = await client.head(url, timeout=self.probe_timeout)
        if resp.status_code in GET_FALLBACK_STATUSES:
            LOGGER.debug("HEAD %s returned %d; retrying with GET", url, resp.status_code)
            step = ProbeStep.GET
            async with client.stream("GET", url, timeout=self.get_timeout) as get_resp:
                return get_resp.status_code, step
        return resp.status_code, step

    async def probe(self, url: str, client: Optional[httpx.AsyncClient] = None) -> VerificationResult:
        if client is None:
            async with self._client() as own:
                return await self.probe(url, own)

        tries = 1 + self.max_retries
        last_err: Optional[str] = None
        for attempt in range(1, tries + 1):
            try:
                status, step = await self._status(client, url)
            except (httpx.InvalidURL, ValueError) as e:
                # not retried and never assumed live: the URL itself is unusable
                LOGGER.warning("Link %s cannot be requested: %s", url, e)
                return VerificationResult(url, Liveness.DEAD, attempts=attempt, error=f"{type(e).__name__}: {e}")
            except httpx.HTTPError as e:
                last_err = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                LOGGER.info("Probe attempt %d/%d for %s failed: %s", attempt, tries, url, last_err)
                if attempt < tries:
                    await asyncio.sleep(self.retry_backoff)
                continue
            outcome = Liveness.LIVE if 200 <= status < 400 else Liveness.DEAD
            return VerificationResult(url, outcome, status_code=status, step=step, attempts=attempt)

        if self.assume_live_on_failure and is_allowed_domain(url, self.allowed_suffix):
            LOGGER.warning("Assuming %s is live after %d failed probes (%s)", url, tries, last_err)
            return VerificationResult(url, Liveness.ASSUMED_LIVE, attempts=tries, error=last_err)
        LOGGER.warning("Link %s unreachable after %d probes (%s)", url, tries, last_err)
        return VerificationResult(url, Liveness.DEAD, attempts=tries, error=last_err)

    async def probe_all(self, urls: List[str], deadline: Optional[float] = None) -> List[Optional[VerificationResult]]:
        """Probe urls with bounded concurrency.

        Results line up with urls. With a deadline, probes still running when
        it expires are cancelled and their slot is None.
        """
        if not urls:
            return []
        sem = asyncio.Semaphore(self.concurrency)
        async with self._client() as client:

            async def run(u: str) -> VerificationResult:
                async with sem:
                    return await self.probe(u, client)

            tasks = [asyncio.ensure_future(run(u)) for u in urls]
            done, pending = await asyncio.wait(tasks, timeout=deadline)
            if pending:
                LOGGER.warning("Link verification deadline (%.1fs) hit; %d probe(s) abandoned", deadline or 0.0, len(pending))
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        return [t.result() if t in done and not t.cancelled() else None for t in tasks]

    async def verify_batch(self, urls: Iterable[str], deadline: Optional[float] = None) -> List[str]:
        """Return the confirmed (or assumed) live subset of urls, in input order."""
        candidates = self.candidates(urls)
        if not candidates:
            return []
        results = await self.probe_all(candidates, deadline=deadline)
        verified = [r.url for r in results if r is not None and r.is_live]
        LOGGER.info("Verified %d of %d candidate link(s)", len(verified), len(candidates))
        return verified
