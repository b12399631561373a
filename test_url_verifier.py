import asyncio

import httpx
import pytest

from url_verifier import Liveness, ProbeStep, UrlVerifier, clean, is_allowed_domain, is_valid


class Recorder:
    """MockTransport handler that records calls and answers per host."""

    def __init__(self, responses=None, default=200):
        self.responses = responses or {}
        self.default = default
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, str(request.url)))
        answer = self.responses.get(request.url.host, self.default)
        if callable(answer):
            return answer(request)
        if isinstance(answer, Exception):
            raise answer
        return httpx.Response(answer)


def timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectTimeout("timed out", request=request)


def make_verifier(handler, **kwargs) -> UrlVerifier:
    kwargs.setdefault("retry_backoff", 0)
    return UrlVerifier(transport=httpx.MockTransport(handler), **kwargs)


# ---------------------------
# Pure filters
# ---------------------------

@pytest.mark.parametrize("url", [
    "https://wam.ae/foo",
    "http://example.com",
    "HTTPS://Government.AE/path?q=1#frag",
    "https://abc",
])
def test_is_valid_accepts(url):
    assert is_valid(url)


@pytest.mark.parametrize("url", [
    "not a url",
    "",
    "ftp://wam.ae/file",
    "https://ab/",
    "//wam.ae/foo",
    "https://wam.ae:notaport/",
    "javascript:alert(1)",
    None,
])
def test_is_valid_rejects(url):
    assert not is_valid(url)


def test_clean_trims_and_decodes_once():
    assert clean("  https://wam.ae/foo \n") == "https://wam.ae/foo"
    assert clean("https%3A%2F%2Fwam.ae%2Ffoo") == "https://wam.ae/foo"
    assert clean("  not a url ") == "not a url"
    assert clean(None) == ""


@pytest.mark.parametrize("raw", [
    " https://wam.ae/a ",
    "https%3A%2F%2Fwam.ae%2Fa%2520b",
    "garbage %41",
    "",
    "https://wam.ae/%E2%9C%93",
])
def test_clean_is_idempotent(raw):
    assert clean(clean(raw)) == clean(raw)


def test_is_allowed_domain():
    assert is_allowed_domain("https://www.WAM.ae/x", ".ae")
    assert is_allowed_domain("https://mohesr.gov.ae", ".AE")
    assert not is_allowed_domain("https://example.com/wam.ae", ".ae")
    assert not is_allowed_domain("https://wam.ae.example.com", ".ae")
    assert not is_allowed_domain("not a url", ".ae")


def test_candidates_dedupe_filter_before_probing():
    rec = Recorder()
    v = make_verifier(rec)
    urls = ["https://wam.ae/foo", "not a url", "https://example.com/bar", "https://wam.ae/foo"]
    assert v.candidates(urls) == ["https://wam.ae/foo"]
    assert rec.calls == []


def test_candidates_rejects_non_list():
    v = make_verifier(Recorder())
    with pytest.raises(TypeError):
        v.candidates("https://wam.ae/foo")
    with pytest.raises(TypeError):
        v.candidates(None)


# ---------------------------
# Probe
# ---------------------------

@pytest.mark.asyncio
async def test_probe_live_on_head():
    rec = Recorder()
    res = await make_verifier(rec).probe("https://wam.ae/a")
    assert res.outcome is Liveness.LIVE
    assert res.status_code == 200
    assert res.step is ProbeStep.HEAD
    assert [m for m, _ in rec.calls] == ["HEAD"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [403, 405])
async def test_probe_falls_back_to_get(status):
    def handler(request):
        return httpx.Response(status if request.method == "HEAD" else 200)

    rec = Recorder({"wam.ae": handler})
    res = await make_verifier(rec).probe("https://wam.ae/a")
    assert res.outcome is Liveness.LIVE
    assert res.step is ProbeStep.GET
    assert [m for m, _ in rec.calls] == ["HEAD", "GET"]


@pytest.mark.asyncio
async def test_probe_get_fallback_still_forbidden_is_dead():
    rec = Recorder({"wam.ae": 403})
    res = await make_verifier(rec).probe("https://wam.ae/a")
    assert res.outcome is Liveness.DEAD
    assert res.status_code == 403


@pytest.mark.asyncio
async def test_probe_not_found_is_dead_without_retry():
    rec = Recorder({"wam.ae": 404})
    res = await make_verifier(rec).probe("https://wam.ae/a")
    assert res.outcome is Liveness.DEAD
    assert res.status_code == 404
    assert len(rec.calls) == 1


@pytest.mark.asyncio
async def test_probe_redirect_status_counts_as_live():
    rec = Recorder({"wam.ae": 302})
    res = await make_verifier(rec).probe("https://wam.ae/a")
    assert res.outcome is Liveness.LIVE


@pytest.mark.asyncio
async def test_timeouts_on_allowed_domain_are_assumed_live():
    rec = Recorder({"wam.ae": timeout})
    res = await make_verifier(rec).probe("https://wam.ae/slow")
    assert res.outcome is Liveness.ASSUMED_LIVE
    assert res.is_live
    assert res.attempts == 2
    assert len(rec.calls) == 2
    assert "ConnectTimeout" in res.error


@pytest.mark.asyncio
async def test_timeouts_elsewhere_are_dead():
    rec = Recorder({"example.com": timeout})
    res = await make_verifier(rec).probe("https://example.com/slow")
    assert res.outcome is Liveness.DEAD
    assert len(rec.calls) == 2


@pytest.mark.asyncio
async def test_assume_live_can_be_disabled():
    rec = Recorder({"wam.ae": timeout})
    res = await make_verifier(rec, assume_live_on_failure=False).probe("https://wam.ae/slow")
    assert res.outcome is Liveness.DEAD


@pytest.mark.asyncio
async def test_retry_recovers_after_one_failure():
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("reset", request=request)
        return httpx.Response(204)

    res = await make_verifier(Recorder({"wam.ae": flaky})).probe("https://wam.ae/a")
    assert res.outcome is Liveness.LIVE
    assert res.attempts == 2


@pytest.mark.asyncio
async def test_max_retries_zero_probes_once():
    rec = Recorder({"example.com": timeout})
    res = await make_verifier(rec, max_retries=0).probe("https://example.com/")
    assert res.outcome is Liveness.DEAD
    assert len(rec.calls) == 1


# ---------------------------
# Batch
# ---------------------------

@pytest.mark.asyncio
async def test_verify_batch_end_to_end():
    rec = Recorder({"dead.gov.ae": 404, "slow.gov.ae": timeout})
    urls = [
        "https://wam.ae/foo",
        "not a url",
        "https://example.com/bar",
        " https://dead.gov.ae/x ",
        "https://slow.gov.ae/y",
        "https://wam.ae/foo",
        42,
    ]
    out = await make_verifier(rec).verify_batch(urls)
    assert out == ["https://wam.ae/foo", "https://slow.gov.ae/y"]
    assert not any("example.com" in u for _, u in rec.calls)


@pytest.mark.asyncio
async def test_verify_batch_empty_makes_no_calls():
    rec = Recorder()
    assert await make_verifier(rec).verify_batch([]) == []
    assert await make_verifier(rec).verify_batch(["https://example.com/x"]) == []
    assert rec.calls == []


@pytest.mark.asyncio
async def test_verify_batch_caps_probes():
    rec = Recorder()
    urls = [f"https://site{i}.gov.ae/page" for i in range(15)]
    out = await make_verifier(rec, max_batch_size=10).verify_batch(urls)
    assert out == urls[:10]
    assert len({u for _, u in rec.calls}) == 10


@pytest.mark.asyncio
async def test_verify_batch_preserves_order_and_bounds_concurrency():
    state = {"active": 0, "peak": 0}
    delays = {f"site{i}.gov.ae": 0.05 - i * 0.005 for i in range(8)}

    async def handler(request):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(delays[request.url.host])
        state["active"] -= 1
        return httpx.Response(200)

    urls = [f"https://site{i}.gov.ae/" for i in range(8)]
    v = UrlVerifier(transport=httpx.MockTransport(handler), retry_backoff=0, concurrency=3)
    out = await v.verify_batch(urls)
    assert out == urls
    assert state["peak"] <= 3


@pytest.mark.asyncio
async def test_verify_batch_deadline_keeps_partial_results():
    async def handler(request):
        if request.url.host == "slow.gov.ae":
            await asyncio.sleep(5)
        return httpx.Response(200)

    v = UrlVerifier(transport=httpx.MockTransport(handler), retry_backoff=0)
    out = await v.verify_batch(["https://slow.gov.ae/", "https://wam.ae/"], deadline=0.2)
    assert out == ["https://wam.ae/"]


@pytest.mark.asyncio
async def test_verify_batch_never_returns_unknown_urls():
    rec = Recorder()
    urls = ["https%3A%2F%2Fwam.ae%2Fa", "https://wam.ae/a", "https://dsc.gov.ae/b"]
    out = await make_verifier(rec).verify_batch(urls)
    cleaned = {clean(u) for u in urls}
    assert set(out) <= cleaned
    assert len(out) == len(set(out)) == 2


# ---------------------------
# Hostile URL shapes
# ---------------------------

def test_undecodable_idna_host_is_not_valid():
    assert not is_valid("https://xn--.ae/")
    assert not is_allowed_domain("https://xn--.ae/", ".ae")
    assert clean(" https://xn--.ae/ ") == "https://xn--.ae/"


@pytest.mark.asyncio
async def test_probe_marks_unrequestable_url_dead_without_retry():
    rec = Recorder()
    res = await make_verifier(rec).probe("https://xn--.ae/")
    assert res.outcome is Liveness.DEAD
    assert res.attempts == 1
    assert rec.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("urls", [
    ["https://xn--.ae/"],
    ["https://xn--.ae/", "https://wam.ae/ok"],
    ["https://wam.ae:99999/", "https://wam.ae:0/x"],
    ["HTTPS://WAM.AE/Upper", "hTtP://dsc.gov.ae"],
    ["https://user:pw@wam.ae/", "https://[::1]/", "https://127.0.0.1.ae/"],
    ["https://wam.ae/%ZZ", "https://wam.ae/été", "https://مثال.ae/"],
    ["file:///etc/passwd", "mailto:a@wam.ae", "data:text/plain,wam.ae"],
])
async def test_verify_batch_returns_a_list_for_odd_urls(urls):
    out = await make_verifier(Recorder()).verify_batch(urls)
    assert isinstance(out, list)
    assert "https://xn--.ae/" not in out


# ---------------------------
# Redirects
# ---------------------------

@pytest.mark.asyncio
async def test_redirect_is_live_without_following_it():
    rec = Recorder({
        "wam.ae": lambda request: httpx.Response(301, headers={"Location": "https://missing.gov.ae/gone"}),
        "missing.gov.ae": 404,
    })
    res = await make_verifier(rec).probe("https://wam.ae/old")
    assert res.outcome is Liveness.LIVE
    assert res.status_code == 301
    assert res.step is ProbeStep.HEAD
    assert rec.calls == [("HEAD", "https://wam.ae/old")]
