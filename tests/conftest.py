"""Shared fakes for retrieval tests: an aiohttp-like session and a manual clock."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Union

import pytest


class FakeResponse:
    """Minimal stand-in for ``aiohttp.ClientResponse`` used as an async context manager."""

    def __init__(
        self,
        status: int = 200,
        *,
        text: str = "",
        json_data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        reason: str = "OK",
        raise_on_enter: Optional[BaseException] = None,
    ) -> None:
        self.status = status
        self._text = text
        self._json = json_data
        self.headers = headers or {}
        self.reason = reason
        self._raise_on_enter = raise_on_enter

    async def __aenter__(self) -> "FakeResponse":
        if self._raise_on_enter is not None:
            raise self._raise_on_enter
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    async def text(self) -> str:
        return self._text

    async def json(self, **kwargs: Any) -> Any:
        return self._json


ResponseSpec = Union[FakeResponse, BaseException, Callable[[str, Dict[str, Any]], FakeResponse]]


class FakeSession:
    """Replays queued responses for ``get``/``head``; the last one repeats once the queue drains."""

    def __init__(
        self,
        responses: Optional[List[ResponseSpec]] = None,
        *,
        head_responses: Optional[List[ResponseSpec]] = None,
    ) -> None:
        self._get_queue = list(responses or [])
        self._head_queue = list(head_responses or [])
        self.calls: List[tuple] = []
        self.closed = False

    @staticmethod
    def _next(queue: List[ResponseSpec], url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        if not queue:
            raise AssertionError(f"Unexpected request to {url}")
        spec = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(spec, BaseException):
            return FakeResponse(raise_on_enter=spec)
        if callable(spec) and not isinstance(spec, FakeResponse):
            return spec(url, kwargs)
        return spec

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("GET", url, kwargs))
        return self._next(self._get_queue, url, kwargs)

    def head(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("HEAD", url, kwargs))
        return self._next(self._head_queue, url, kwargs)

    async def close(self) -> None:
        self.closed = True

    def urls(self, method: str = "GET") -> List[str]:
        return [url for m, url, _ in self.calls if m == method]


class ManualClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self, clock: Optional[ManualClock] = None) -> None:
        self.calls: List[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


def _result_block(title: str, href: str, byline: str, snippet: str = "", footer: str = "") -> str:
    return f"""
    <div class="gs_r gs_or gs_scl">
      <div class="gs_ri">
        <h3 class="gs_rt"><a href="{href}">{title}</a></h3>
        <div class="gs_a">{byline}</div>
        <div class="gs_rs">{snippet}</div>
        <div class="gs_fl">{footer}</div>
      </div>
    </div>
    """


def scholar_page(*blocks: str) -> str:
    body = "".join(blocks)
    return (
        "<html><head><title>Google Scholar</title></head><body>"
        '<div id="gs_res_ccl_mid">' + body + "</div>"
        '<div id="gs_ftr"><a href="/intl/en/scholar/about.html">About</a></div>'
        "</body></html>"
    )


SCHOLAR_RESULTS_PAGE = scholar_page(
    _result_block(
        "Deep Learning for Citation Analysis in Scholarly Networks",
        "https://example.org/paper1",
        "J Smith, A Jones - Journal of Informetrics, 2021 - Elsevier",
        "We study how deep neural networks can model citation behaviour across large "
        "scholarly corpora. doi:10.1016/j.joi.2021.101234",
        '<a href="/scholar?cites=1">Cited by 42</a> <a href="/scholar?q=related:1">Related articles</a>',
    ),
    _result_block(
        "Transformers in Bibliometrics",
        "/scholar_url?url=https%3A%2F%2Farxiv.org%2Fabs%2F2101.00001&amp;hl=en",
        "M Garcia - arXiv preprint arXiv:2101.00001, 2021 - arxiv.org",
        "PDF",
    ),
)

NO_RESULTS_PAGE = scholar_page(
    '<div class="gs_med">Your search - <b>qwxyzzy</b> - did not match any articles.</div>'
)

LINKS_ONLY_PAGE = (
    "<html><body>"
    '<a href="/">Home</a>'
    '<a href="/advanced">Advanced search help</a>'
    '<a href="https://example.org/a">A Longitudinal Study of Open Access Citation Advantage</a>'
    '<a href="https://example.org/b">Settings</a>'
    '<a href="https://example.org/c">Measuring research impact with altmetrics</a>'
    "</body></html>"
)

NAVIGATION_ONLY_PAGE = (
    "<html><body>"
    '<a href="/">Home</a> <a href="/settings">Settings</a> <a href="/login">Sign in</a>'
    '<a href="/advanced">Advanced search help</a> <p>Nothing else to see on this page at all.</p>'
    "</body></html>"
)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleep_recorder() -> RecordingSleep:
    return RecordingSleep()
