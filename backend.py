"""
Catalog Assistant — answers library catalog questions with cited records and verified official links.

Single backend module with clear sections: config, collaborators, API.

Stack: Python 3.11+, FastAPI, Pydantic, httpx, bleach.

Notes:
- Stateless per request: records come in with the query, nothing is stored.
- Citations [n] are checked against the records offered; out-of-range ones are stripped.
- External links are kept only on the allowed domain suffix and only if a probe says they are live.
- Config loaded from CATALOG_ASSISTANT_CONFIG env var or ./config.json; sensible defaults otherwise.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from compliance import AUTHORIZED_SOURCES
from generation import (
    ChainGenerator,
    ChatCompletionProvider,
    CompletionProvider,
    MockProvider,
    UpstreamError,
    lmstudio_url,
    parse_book_selection,
    parse_json_loose,
    parse_suggestions,
)
from pipeline import AnswerPipeline
from rate_limit import FixedWindowRateLimiter, InMemoryWindowStore
from url_verifier import UrlVerifier

CODE_VERSION = "catalog-assistant-v1.0"


# ------------------------------------------------------------
# Config
# ------------------------------------------------------------


class AppConfig(BaseModel):
    # Link verification
    allowed_domain_suffix: str = ".ae"
    probe_timeout: float = 8.0
    get_timeout: float = 15.0
    max_batch_size: int = 10
    max_retries: int = 1
    retry_backoff: float = 1.0
    probe_concurrency: int = 3
    assume_live_on_failure_for_allowed_domain: bool = True
    verification_deadline: float = 30.0

    # Text generation
    providers_order: List[str] = Field(default_factory=lambda: ["perplexity", "lmstudio"])
    perplexity_enabled: bool = True
    perplexity_url: str = "https://api.perplexity.ai/chat/completions"
    perplexity_api_key: Optional[str] = None
    perplexity_model: str = "sonar-pro"
    perplexity_timeout: float = 60.0
    lm_enabled: bool = False
    lm_url: str = "http://localhost:1234/v1/chat/completions"
    lm_model: Optional[str] = None
    lm_timeout: float = 120.0
    llm_mock: bool = False
    temperature: float = 0.05
    max_tokens: int = 1200

    # Service
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    rate_limit: int = 100
    rate_window_seconds: float = 3600.0

    @field_validator(
        "probe_timeout",
        "get_timeout",
        "max_batch_size",
        "probe_concurrency",
        "verification_deadline",
        "perplexity_timeout",
        "lm_timeout",
        "max_tokens",
        "rate_limit",
        "rate_window_seconds",
    )
    def _positive(cls, v):  # type: ignore[override]
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("max_retries", "retry_backoff")
    def _non_negative(cls, v):  # type: ignore[override]
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def resolved_api_key(self) -> Optional[str]:
        return self.perplexity_api_key or os.environ.get("PERPLEXITY_API_KEY") or None


def load_config(path_override: Optional[str | Path] = None) -> AppConfig:
    logger = logging.getLogger("catalog")
    cfg_path_env = os.environ.get("CATALOG_ASSISTANT_CONFIG")
    candidate_paths: List[Path] = []
    if path_override:
        candidate_paths.append(Path(path_override))
    if cfg_path_env:
        candidate_paths.append(Path(cfg_path_env))
    candidate_paths.append(Path.cwd() / "config.json")

    for p in candidate_paths:
        try:
            if p.exists():
                logger.info("Loading configuration from: %s", p)
                with p.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                config = AppConfig(**data)
                logger.info("Configuration loaded: suffix=%s, probe_timeout=%s, max_batch_size=%s, assume_live=%s, mock=%s",
                            config.allowed_domain_suffix, config.probe_timeout, config.max_batch_size,
                            config.assume_live_on_failure_for_allowed_domain, config.llm_mock)
                return config
        except Exception as e:
            logger.warning("Failed loading config from %s: %s", p, e)
    logger.info("Using default in-memory config; create config.json or set CATALOG_ASSISTANT_CONFIG to customize.")
    return AppConfig()


LOGGER = logging.getLogger("catalog")
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
)

CONFIG = load_config()
GENERATOR: Optional[ChainGenerator] = None
VERIFIER: Optional[UrlVerifier] = None
PIPELINE: Optional[AnswerPipeline] = None
LIMITER: Optional[FixedWindowRateLimiter] = None


def build_providers(config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[CompletionProvider]:
    if config.llm_mock:
        return [MockProvider()]
    providers: List[CompletionProvider] = []
    for name in config.providers_order:
        if name == "perplexity" and config.perplexity_enabled:
            if not config.resolved_api_key:
                LOGGER.warning("Perplexity enabled but no API key configured; skipping provider")
                continue
            providers.append(ChatCompletionProvider(
                "perplexity",
                config.perplexity_url,
                config.perplexity_model,
                api_key=config.resolved_api_key,
                timeout=config.perplexity_timeout,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                transport=transport,
            ))
        elif name == "lmstudio" and config.lm_enabled:
            providers.append(ChatCompletionProvider(
                "lmstudio",
                lmstudio_url(config.lm_url),
                config.lm_model,
                timeout=config.lm_timeout,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                transport=transport,
            ))
        elif name not in ("perplexity", "lmstudio"):
            LOGGER.warning("Unknown generation provider in providers_order: %s", name)
    return providers


def init_app(config_path: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """(Re)initialize config and every collaborator.

    Safe to call multiple times in-process (used in tests). transport, when
    given, is used for all outbound HTTP.
    """
    global CONFIG, GENERATOR, VERIFIER, PIPELINE, LIMITER
    CONFIG = load_config(config_path)
    GENERATOR = ChainGenerator(build_providers(CONFIG, transport))
    LOGGER.info("Generation chain initialized with providers: %s", GENERATOR.names)
    VERIFIER = UrlVerifier(
        allowed_suffix=CONFIG.allowed_domain_suffix,
        probe_timeout=CONFIG.probe_timeout,
        get_timeout=CONFIG.get_timeout,
        max_batch_size=CONFIG.max_batch_size,
        max_retries=CONFIG.max_retries,
        retry_backoff=CONFIG.retry_backoff,
        concurrency=CONFIG.probe_concurrency,
        assume_live_on_failure=CONFIG.assume_live_on_failure_for_allowed_domain,
        transport=transport,
    )
    LOGGER.info("Link verifier initialized: suffix=%s, batch=%d, concurrency=%d, retries=%d",
                CONFIG.allowed_domain_suffix, CONFIG.max_batch_size, CONFIG.probe_concurrency, CONFIG.max_retries)
    PIPELINE = AnswerPipeline(GENERATOR, VERIFIER, verification_deadline=CONFIG.verification_deadline)
    LIMITER = FixedWindowRateLimiter(InMemoryWindowStore(), CONFIG.rate_limit, CONFIG.rate_window_seconds)
    LOGGER.info("Rate limiter initialized: %d requests per %.0fs", CONFIG.rate_limit, CONFIG.rate_window_seconds)


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(request: Request) -> None:
    if LIMITER is not None and not LIMITER.allow(client_key(request)):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again later.")


# ------------------------------------------------------------
# FastAPI App & Routes
# ------------------------------------------------------------


app = FastAPI(title="Catalog Assistant", version="1.0.0")

if CONFIG.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CONFIG.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.get("/health")
@app.get("/api/health")
def health() -> Dict[str, Any]:
    names = GENERATOR.names if GENERATOR else []
    return {
        "status": "ok",
        "message": "Catalog Assistant backend is running",
        "time": datetime.now(timezone.utc).isoformat(),
        "codeVersion": CODE_VERSION,
        "providers": names,
        "perplexityConfigured": "perplexity" in names,
        "modelVersion": CONFIG.perplexity_model,
    }


@app.get("/")
def root() -> Response:
    return PlainTextResponse("Catalog Assistant API running. Open /docs for API docs.")


@app.post("/config/reload")
def reload_config() -> Dict[str, Any]:
    """Reload config.json and rebuild collaborators without full process restart."""
    old = CONFIG.model_dump()
    init_app()
    new = CONFIG.model_dump()
    changed = {k: (old.get(k), new.get(k)) for k in new.keys() if old.get(k) != new.get(k)}
    changed.pop("perplexity_api_key", None)
    return {"status": "ok", "changed": changed}


@app.get("/api/authorized-sources")
def authorized_sources() -> Dict[str, Any]:
    suffix = CONFIG.allowed_domain_suffix
    sources = [
        {"name": s.name, "domain": s.domain, "category": s.category, "baseUrl": s.base_url, "official": s.official}
        for s in AUTHORIZED_SOURCES
    ]
    return {
        "message": f"ONLY these official ({suffix}) sources are permitted",
        "totalAuthorizedSources": len(sources),
        "sources": sources,
        "rule": f"Any external source MUST be an official {suffix} domain",
    }


class BookRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    year: Optional[Any] = None
    subject: Optional[str] = None
    summary: Optional[str] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = ""
    matched_books: List[BookRecord] = Field(default_factory=list, alias="matchedBooks")
    search_field: str = Field(default="default", alias="searchField")


@app.post("/api/chat", dependencies=[Depends(enforce_rate_limit)])
async def chat(req: ChatRequest) -> Dict[str, Any]:
    query = req.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")
    assert PIPELINE is not None, "PIPELINE not initialized; call init_app() first"

    records = [b.model_dump(exclude_none=True) for b in req.matched_books]
    LOGGER.info("Chat request: field=%s, records=%d", req.search_field, len(records))
    try:
        result = await PIPELINE.answer(query, records, req.search_field)
    except UpstreamError as e:
        LOGGER.error("Chat generation failed: %s", e)
        raise HTTPException(status_code=502, detail=f"Text generation failed: {e.detail}")
    payload = result.as_dict()
    if not records:
        payload["sourceCompliance"] = {"compliant": False, "status": "NO_LIBRARY_SOURCES"}
    return payload


class UnderstandQueryRequest(BaseModel):
    query: str = ""


def _default_analysis(query: str, reason: str) -> Dict[str, Any]:
    return {
        "intent": "default",
        "field": "default",
        "key_terms": [query],
        "reasoning": reason,
        "fallback": True,
    }


@app.post("/api/understand-query", dependencies=[Depends(enforce_rate_limit)])
async def understand_query(req: UnderstandQueryRequest) -> Dict[str, Any]:
    query = req.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query required")
    assert GENERATOR is not None, "GENERATOR not initialized; call init_app() first"
    prompt = (
        "Analyze this library search query and return only a JSON object with keys: "
        'intent ("author_books"|"about_topic"|"question"|"title_search"), '
        'field ("author"|"subject"|"summary"|"title"|"default"), '
        "key_terms (array of strings), reasoning (string).\n"
        f'Query: "{query}"'
    )
    try:
        res = await GENERATOR.complete([
            {"role": "system", "content": "You are a JSON-only response system. Return only valid JSON."},
            {"role": "user", "content": prompt},
        ])
    except UpstreamError as e:
        LOGGER.error("Query understanding failed: %s", e)
        return _default_analysis(query, "Error occurred, using default")
    analysis = parse_json_loose(res.text)
    if not analysis:
        LOGGER.warning("Could not parse query analysis: %s", res.text[:200])
        return _default_analysis(query, "AI analysis failed, using default")
    return analysis


SEARCH_CATALOG_LIMIT = 30
SEARCH_MAX_IDS = 20
RECOMMEND_CATALOG_LIMIT = 50
RECOMMEND_MAX_IDS = 10
SUGGEST_MIN_CHARS = 3


def _catalog_json(catalog: List[BookRecord], limit: int) -> str:
    return json.dumps([b.model_dump(exclude_none=True) for b in catalog[:limit]], ensure_ascii=False, default=str)


async def _select_books(prompt: str, default_explanation: str, limit: int, what: str) -> Dict[str, Any]:
    assert GENERATOR is not None, "GENERATOR not initialized; call init_app() first"
    try:
        res = await GENERATOR.complete([{"role": "user", "content": prompt}])
    except UpstreamError as e:
        LOGGER.error("%s generation failed: %s", what, e)
        raise HTTPException(status_code=502, detail=f"Text generation failed: {e.detail}")
    explanation, book_ids = parse_book_selection(res.text, default_explanation, limit)
    LOGGER.info("%s selected %d book id(s) via %s", what, len(book_ids), res.source)
    return {"explanation": explanation, "bookIds": book_ids}


class SearchRequest(BaseModel):
    query: str = ""
    catalog: List[BookRecord] = Field(default_factory=list)


@app.post("/api/search", dependencies=[Depends(enforce_rate_limit)])
async def search(req: SearchRequest) -> Dict[str, Any]:
    query = req.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")
    prompt = (
        "You are analyzing a search query for a library catalog.\n\n"
        f'Query: "{query}"\n\n'
        f"Available books:\n{_catalog_json(req.catalog, SEARCH_CATALOG_LIMIT)}\n\n"
        "Task:\n"
        "1. Understand what the user is looking for\n"
        "2. Identify the most relevant books by their IDs\n"
        "3. Explain your reasoning\n\n"
        "Format your response as:\n"
        "EXPLANATION: [brief explanation]\n"
        "BOOK_IDS: [comma-separated list of relevant book IDs]"
    )
    return await _select_books(prompt, "Found relevant results", SEARCH_MAX_IDS, "Search")


class RecommendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_title: str = Field(default="", alias="bookTitle")
    catalog: List[BookRecord] = Field(default_factory=list)


@app.post("/api/recommend", dependencies=[Depends(enforce_rate_limit)])
async def recommend(req: RecommendRequest) -> Dict[str, Any]:
    title = req.book_title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Book title is required")
    prompt = (
        f'A user is interested in books similar to: "{title}"\n\n'
        f"Available books in catalog:\n{_catalog_json(req.catalog, RECOMMEND_CATALOG_LIMIT)}\n\n"
        "Task:\n"
        "1. Find 5 books similar to the given title\n"
        "2. Consider: topic, author style, subject area, publication period\n"
        "3. Provide reasoning for each recommendation\n\n"
        "Format:\n"
        "EXPLANATION: [why these books are similar]\n"
        "BOOK_IDS: [comma-separated IDs]"
    )
    return await _select_books(prompt, "Recommendations based on similarity", RECOMMEND_MAX_IDS, "Recommend")


class SuggestRequest(BaseModel):
    partial: str = ""


@app.post("/api/suggest", dependencies=[Depends(enforce_rate_limit)])
async def suggest(req: SuggestRequest) -> Dict[str, Any]:
    """Autocomplete; any failure degrades to an empty list."""
    partial = req.partial.strip()
    if len(partial) < SUGGEST_MIN_CHARS:
        return {"suggestions": []}
    assert GENERATOR is not None, "GENERATOR not initialized; call init_app() first"
    prompt = (
        f'User typed: "{partial}"\n\n'
        "Generate 5 complete search queries for a library catalog. "
        "Mix Arabic and English suggestions based on the input language.\n\n"
        "Return ONLY a comma-separated list of suggestions, nothing else."
    )
    try:
        res = await GENERATOR.complete([{"role": "user", "content": prompt}])
    except UpstreamError as e:
        LOGGER.warning("Suggestion generation failed: %s", e)
        return {"suggestions": []}
    return {"suggestions": parse_suggestions(res.text)}


class VerifyLinksRequest(BaseModel):
    urls: List[Any] = Field(default_factory=list)


@app.post("/api/verify-links", dependencies=[Depends(enforce_rate_limit)])
async def verify_links(req: VerifyLinksRequest) -> Dict[str, Any]:
    assert VERIFIER is not None, "VERIFIER not initialized; call init_app() first"
    verified = await VERIFIER.verify_batch(req.urls, deadline=CONFIG.verification_deadline)
    return {"verified": verified}


# ------------------------------------------------------------
# Dev entrypoint
# ------------------------------------------------------------


def _dev_main() -> None:
    import uvicorn

    LOGGER.info("Catalog Assistant %s starting with providers=%s", CODE_VERSION, GENERATOR.names if GENERATOR else [])
    uvicorn.run("backend:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    _dev_main()

# Initialize on import for normal runs
init_app()
