import json

import httpx
import pytest
import pytest_asyncio

import backend


def probe_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "dead.gov.ae":
        return httpx.Response(404)
    return httpx.Response(200)


def write_config(tmp_path, **overrides):
    cfg = {
        "llm_mock": True,
        "retry_backoff": 0,
        "cors_origins": ["*"],
    }
    cfg.update(overrides)
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(json.dumps(cfg), encoding="utf-8")
    return cfg_path


@pytest_asyncio.fixture
async def client(tmp_path, monkeypatch):
    cfg_path = write_config(tmp_path)
    monkeypatch.setenv("CATALOG_ASSISTANT_CONFIG", str(cfg_path))
    backend.init_app(transport=httpx.MockTransport(probe_handler))

    transport = httpx.ASGITransport(app=backend.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


BOOKS = [
    {"id": 11, "title": "Gulf Security", "author": "A. Author", "summary": "Regional security."},
    {"id": 12, "title": "Energy Futures", "author": "B. Author", "subject": "Energy"},
]


@pytest.mark.asyncio
async def test_health(client: httpx.AsyncClient):
    r = await client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["providers"] == ["mock"]


@pytest.mark.asyncio
async def test_chat_returns_citations_and_verified_links(client: httpx.AsyncClient):
    r = await client.post("/api/chat", json={"query": "security", "matchedBooks": BOOKS, "searchField": "summary"})
    assert r.status_code == 200
    data = r.json()
    assert data["bookIds"] == [1]
    assert data["verifiedLinks"] == ["https://wam.ae/en"]
    assert data["citations"]["invalid"] == 0
    assert data["sourceCompliance"]["compliant"] is True
    assert data["sourceCompliance"]["authorizedExternalSources"] == 1


@pytest.mark.asyncio
async def test_chat_without_books_skips_generation(client: httpx.AsyncClient):
    r = await client.post("/api/chat", json={"query": "anything", "matchedBooks": []})
    assert r.status_code == 200
    data = r.json()
    assert data["bookIds"] == []
    assert data["verifiedLinks"] == []
    assert data["sourceCompliance"]["status"] == "NO_LIBRARY_SOURCES"


@pytest.mark.asyncio
async def test_chat_requires_query(client: httpx.AsyncClient):
    r = await client.post("/api/chat", json={"query": "  ", "matchedBooks": BOOKS})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_chat_upstream_failure_is_502(client: httpx.AsyncClient, monkeypatch):
    monkeypatch.setattr(backend.PIPELINE, "generator", backend.ChainGenerator([]))
    r = await client.post("/api/chat", json={"query": "security", "matchedBooks": BOOKS})
    assert r.status_code == 502


@pytest.mark.asyncio
async def test_understand_query_falls_back_on_non_json(client: httpx.AsyncClient):
    r = await client.post("/api/understand-query", json={"query": "books by someone"})
    assert r.status_code == 200
    data = r.json()
    assert data["fallback"] is True
    assert data["key_terms"] == ["books by someone"]


@pytest.mark.asyncio
async def test_verify_links_filters_domain_and_dead_links(client: httpx.AsyncClient):
    urls = ["https://wam.ae/a", "https://example.com/b", "https://dead.gov.ae/c", "not a url", "https://wam.ae/a"]
    r = await client.post("/api/verify-links", json={"urls": urls})
    assert r.status_code == 200
    assert r.json()["verified"] == ["https://wam.ae/a"]


@pytest.mark.asyncio
async def test_authorized_sources(client: httpx.AsyncClient):
    r = await client.get("/api/authorized-sources")
    assert r.status_code == 200
    data = r.json()
    assert data["totalAuthorizedSources"] == len(data["sources"])
    assert all(s["domain"].endswith(".ae") for s in data["sources"])


@pytest.mark.asyncio
async def test_rate_limit(tmp_path, monkeypatch):
    cfg_path = write_config(tmp_path, rate_limit=2)
    monkeypatch.setenv("CATALOG_ASSISTANT_CONFIG", str(cfg_path))
    backend.init_app(transport=httpx.MockTransport(probe_handler))
    transport = httpx.ASGITransport(app=backend.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        codes = []
        for _ in range(3):
            r = await c.post("/api/chat", json={"query": "q", "matchedBooks": []})
            codes.append(r.status_code)
    assert codes == [200, 200, 429]


def test_invalid_config_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("CATALOG_ASSISTANT_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"max_batch_size": 0}), encoding="utf-8")
    cfg = backend.load_config(bad)
    assert cfg == backend.AppConfig()


@pytest.mark.asyncio
async def test_api_health_alias(client: httpx.AsyncClient):
    r = await client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_root_is_plain_text(client: httpx.AsyncClient):
    r = await client.get("/")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")


def use_reply(monkeypatch, text):
    monkeypatch.setattr(backend, "GENERATOR", backend.ChainGenerator([backend.MockProvider(text=text)]))


@pytest.mark.asyncio
async def test_search_parses_explanation_and_ids(client: httpx.AsyncClient, monkeypatch):
    ids = ", ".join(str(i) for i in range(1, 26))
    use_reply(monkeypatch, f"EXPLANATION: Security titles match.\nBOOK_IDS: {ids}")
    r = await client.post("/api/search", json={"query": "security", "catalog": BOOKS})
    assert r.status_code == 200
    data = r.json()
    assert data["explanation"] == "Security titles match."
    assert data["bookIds"] == list(range(1, 21))


@pytest.mark.asyncio
async def test_search_without_format_uses_default_explanation(client: httpx.AsyncClient):
    r = await client.post("/api/search", json={"query": "security", "catalog": BOOKS})
    assert r.status_code == 200
    assert r.json() == {"explanation": "Found relevant results", "bookIds": []}


@pytest.mark.asyncio
async def test_search_requires_query(client: httpx.AsyncClient):
    r = await client.post("/api/search", json={"query": "", "catalog": BOOKS})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_search_upstream_failure_is_502(client: httpx.AsyncClient, monkeypatch):
    monkeypatch.setattr(backend, "GENERATOR", backend.ChainGenerator([]))
    r = await client.post("/api/search", json={"query": "security", "catalog": BOOKS})
    assert r.status_code == 502


@pytest.mark.asyncio
async def test_recommend_caps_at_ten(client: httpx.AsyncClient, monkeypatch):
    ids = ", ".join(str(i) for i in range(100, 115))
    use_reply(monkeypatch, f"EXPLANATION: Same region.\nBOOK_IDS: [{ids}]")
    r = await client.post("/api/recommend", json={"bookTitle": "Gulf Security", "catalog": BOOKS})
    assert r.status_code == 200
    assert r.json()["bookIds"] == list(range(100, 110))


@pytest.mark.asyncio
async def test_recommend_requires_title(client: httpx.AsyncClient):
    r = await client.post("/api/recommend", json={"catalog": BOOKS})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_suggest(client: httpx.AsyncClient, monkeypatch):
    use_reply(monkeypatch, "gulf security, energy policy\nUAE history, أمن الخليج, oil markets, extra one")
    r = await client.post("/api/suggest", json={"partial": "gul"})
    assert r.status_code == 200
    assert r.json()["suggestions"] == ["gulf security", "energy policy", "UAE history", "أمن الخليج", "oil markets"]


@pytest.mark.asyncio
async def test_suggest_short_input_and_failures_are_empty(client: httpx.AsyncClient, monkeypatch):
    r = await client.post("/api/suggest", json={"partial": "gu"})
    assert r.json() == {"suggestions": []}
    monkeypatch.setattr(backend, "GENERATOR", backend.ChainGenerator([]))
    r = await client.post("/api/suggest", json={"partial": "gulf"})
    assert r.status_code == 200
    assert r.json() == {"suggestions": []}


@pytest.mark.asyncio
async def test_selection_endpoints_are_rate_limited(tmp_path, monkeypatch):
    cfg_path = write_config(tmp_path, rate_limit=1)
    monkeypatch.setenv("CATALOG_ASSISTANT_CONFIG", str(cfg_path))
    backend.init_app(transport=httpx.MockTransport(probe_handler))
    transport = httpx.ASGITransport(app=backend.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        first = await c.post("/api/search", json={"query": "q", "catalog": []})
        second = await c.post("/api/suggest", json={"partial": "gulf"})
    assert (first.status_code, second.status_code) == (200, 429)
