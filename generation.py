from __future__ import annotations

import json
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

LOGGER = logging.getLogger("catalog.generation")

Message = Dict[str, str]


# ---------------------------
# Data structures
# ---------------------------

@dataclass
class Completion:
    text: str
    source: str
    links: List[str] = field(default_factory=list)


class UpstreamError(Exception):
    """A text-generation API failed or returned something unusable."""

    def __init__(self, source: str, detail: str, status_code: Optional[int] = None) -> None:
        self.source = source
        self.detail = detail
        self.status_code = status_code
        status = f" {status_code}" if status_code is not None else ""
        super().__init__(f"{source}{status}: {detail}")


class CompletionProvider:
    name = "base"
    timeout: float = 30.0

    async def complete(self, messages: List[Message]) -> Completion:
        raise UpstreamError(self.name, "not implemented")


# ---------------------------
# Utilities (clean/parse)
# ---------------------------

_REPLACEMENTS = {
    "\u2011": "-",
    "\u2013": "-",
    "\u2014": "--",
    "\u2018": "'",
    "\u2019": "'",
    "\u201C": '"',
    "\u201D": '"',
    "\u2026": "...",
    "\u00A0": " ",
}
_HSPACE_RE = re.compile(r"[^\S\n]+")


def clean_text(text: Optional[str]) -> str:
    """Normalize model output: NFKC, plain punctuation, no control characters.

    Unlike a one-line metadata field, an answer keeps its line breaks; only
    runs of spaces and tabs collapse.
    """
    if text is None:
        return ""
    t = unicodedata.normalize("NFKC", str(text))
    for k, v in _REPLACEMENTS.items():
        t = t.replace(k, v)
    t = t.replace("\r\n", "\n").replace("\r", "\n")
    # Cf is kept: Arabic text relies on directional marks
    t = "".join(ch for ch in t if unicodedata.category(ch) not in ("Cc", "Co", "Cs") or ch in "\t\n")
    lines = [_HSPACE_RE.sub(" ", line).strip() for line in t.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def parse_json_loose(text: str) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    matches = re.findall(r"\{[\s\S]*\}", text)
    if not matches:
        return None
    last = matches[-1]
    try:
        data = json.loads(last)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


_EXPLANATION_RE = re.compile(r"EXPLANATION:\s*(.+?)(?=BOOK_IDS:|\Z)", re.S)
_BOOK_IDS_RE = re.compile(r"BOOK_IDS:\s*\[?([\d,\s]+)")
_SUGGESTION_SPLIT_RE = re.compile(r"[,\n]")


def parse_book_selection(text: str, default_explanation: str, limit: int) -> Tuple[str, List[int]]:
    """Read an "EXPLANATION: ... BOOK_IDS: 1, 2" reply.

    Ids keep reply order, lose duplicates and are capped at limit.
    """
    text = text or ""
    m = _EXPLANATION_RE.search(text)
    explanation = m.group(1).strip() if m else ""
    ids: List[int] = []
    m = _BOOK_IDS_RE.search(text)
    if m:
        for part in m.group(1).split(","):
            if not part.strip():
                continue
            digits = part.strip().split()[0].lstrip("0") or "0"
            # ids longer than this are noise, and int() caps digit strings
            if len(digits) > 18:
                continue
            value = int(digits)
            if value not in ids:
                ids.append(value)
    return explanation or default_explanation, ids[:limit]


def parse_suggestions(text: str, limit: int = 5, max_length: int = 100) -> List[str]:
    parts = (s.strip() for s in _SUGGESTION_SPLIT_RE.split(text or ""))
    return [s for s in parts if 0 < len(s) < max_length][:limit]


def _provider_links(data: Dict[str, Any]) -> List[str]:
    """Links some providers (Perplexity) return next to the answer."""
    links: List[str] = []
    for item in data.get("citations") or []:
        if isinstance(item, str):
            links.append(item)
    for item in data.get("search_results") or []:
        if isinstance(item, dict) and isinstance(item.get("url"), str):
            links.append(item["url"])
    return links


# ---------------------------
# Providers
# ---------------------------

class ChatCompletionProvider(CompletionProvider):
    """OpenAI-style /chat/completions endpoint (Perplexity, LMStudio, ...)."""

    def __init__(
        self,
        name: str,
        url: str,
        model: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        temperature: float = 0.05,
        max_tokens: int = 1200,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.url = url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport

    async def complete(self, messages: List[Message]) -> Completion:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamError(self.name, f"{type(e).__name__}: {e}") from e
        if r.status_code != 200:
            raise UpstreamError(self.name, r.text[:200], status_code=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError(self.name, "response is not JSON", status_code=r.status_code) from e
        if not isinstance(data, dict):
            raise UpstreamError(self.name, "unexpected response shape", status_code=r.status_code)
        choice = (data.get("choices") or [{}])[0]
        content = ((choice if isinstance(choice, dict) else {}).get("message") or {}).get("content") or ""
        if not isinstance(content, str) or not content.strip():
            raise UpstreamError(self.name, "empty completion", status_code=r.status_code)
        return Completion(text=content, source=self.name, links=_provider_links(data))


def lmstudio_url(base_url: str) -> str:
    url = base_url.rstrip("/")
    if not url.endswith("/v1/chat/completions"):
        url = url + "/v1/chat/completions"
    return url


class MockProvider(CompletionProvider):
    name = "mock"

    def __init__(self, text: Optional[str] = None, links: Optional[List[str]] = None) -> None:
        self.text = text or (
            "Mock answer based on the catalog [1].\n"
            "According to Emirates News Agency (WAM): mock external fact (https://wam.ae/en)"
        )
        self.links = list(links or [])

    async def complete(self, messages: List[Message]) -> Completion:
        return Completion(text=self.text, source=self.name, links=list(self.links))


# ---------------------------
# Chain
# ---------------------------

class ChainGenerator:
    def __init__(self, providers: List[CompletionProvider]) -> None:
        self.providers = providers

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.providers]

    async def complete(self, messages: List[Message]) -> Completion:
        last_err: Optional[UpstreamError] = None
        for p in self.providers:
            try:
                res = await p.complete(messages)
            except UpstreamError as e:
                LOGGER.warning("Provider %s failed: %s", p.name, e)
                last_err = e
                continue
            LOGGER.info("Completion from %s (%d chars, %d link(s))", res.source, len(res.text), len(res.links))
            return res
        if last_err is None:
            raise UpstreamError("chain", "no generation provider configured")
        LOGGER.error("All generation providers failed; last error: %s", last_err)
        raise last_err
