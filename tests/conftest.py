"""
Pytest configuration and fixtures for page-loader tests
"""

import pytest
import requests
from requests.adapters import BaseAdapter

import page_loader

PAGE_URL = "https://ru.hexlet.io/courses/"

PAGE_HTML = """<!DOCTYPE html>
<html lang="ru">
  <head>
    <meta charset="utf-8">
    <title>Курсы по программированию Хекслет</title>
    <link rel="stylesheet" media="all" href="https://cdn2.hexlet.io/assets/menu.css">
    <link rel="stylesheet" media="all" href="/assets/application.css" />
    <link href="/courses" rel="canonical">
  </head>
  <body>
    <img src="/assets/professions/nodejs.png" alt="Иконка профессии Node.js-программист" />
    <h3>
      <a href="/professions/nodejs">Node.js-программист</a>
    </h3>
    <script src="https://js.stripe.com/v3/"></script>
    <script src="https://ru.hexlet.io/packs/js/runtime.js"></script>
    <script>window.inline = true;</script>
  </body>
</html>
"""

CSS_BODY = b"body { color: #333; }\n"
PNG_BODY = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01"
JS_BODY = b"console.log('runtime');\n"


class StubAdapter(BaseAdapter):
    """Serves canned responses keyed by absolute URL; unknown URLs fail to connect."""

    def __init__(self, routes):
        super().__init__()
        self.routes = dict(routes)
        self.calls = []

    def send(self, request, **kwargs):
        self.calls.append(request.url)
        if request.url not in self.routes:
            raise requests.ConnectionError(
                f"no route to {request.url}", request=request
            )
        status, body, content_type = self.routes[request.url]
        resp = requests.Response()
        resp.status_code = status
        resp.reason = "OK" if status < 400 else "Error"
        resp._content = body.encode("utf-8") if isinstance(body, str) else body
        resp.headers["Content-Type"] = content_type
        resp.encoding = requests.utils.get_encoding_from_headers(resp.headers)
        resp.url = request.url
        resp.request = request
        return resp

    def close(self):
        pass


def hexlet_routes():
    return {
        PAGE_URL: (200, PAGE_HTML, "text/html; charset=utf-8"),
        "https://ru.hexlet.io/courses": (200, PAGE_HTML, "text/html; charset=utf-8"),
        "https://ru.hexlet.io/assets/application.css": (200, CSS_BODY, "text/css"),
        "https://ru.hexlet.io/assets/professions/nodejs.png": (
            200,
            PNG_BODY,
            "image/png",
        ),
        "https://ru.hexlet.io/packs/js/runtime.js": (
            200,
            JS_BODY,
            "application/javascript",
        ),
    }


def make_session(routes):
    session = page_loader.build_session(page_loader.Settings(retries=0))
    adapter = StubAdapter(routes)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session, adapter


@pytest.fixture
def routes():
    return hexlet_routes()


@pytest.fixture
def stub(routes):
    """Session whose transport is the stub adapter; yields (session, adapter)"""
    session, adapter = make_session(routes)
    yield session, adapter
    session.close()


@pytest.fixture
def session(stub):
    return stub[0]


@pytest.fixture
def out_dir(tmp_path):
    d = tmp_path / "out"
    d.mkdir()
    return d


@pytest.fixture
def soup():
    return page_loader.bs4_parse(PAGE_HTML)
