import pytest
import requests


class FakeResponse:
    def __init__(self, status_code=200, body=b""):
        self.status_code = status_code
        # A list of bytes is served chunk by chunk
        self._chunks = body if isinstance(body, list) else [body]

    def iter_content(self, chunk_size=1):
        return iter(self._chunks)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Stands in for requests.Session; maps URLs to bodies, status codes or errors."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requested = []
        self.verify = True

    def get(self, url, timeout=None, stream=False):
        self.requested.append((url, timeout, stream))
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"Failed to resolve '{url}'")
        if isinstance(route, Exception):
            raise route
        if isinstance(route, int):
            return FakeResponse(status_code=route)
        if callable(route):
            return route()
        return FakeResponse(body=route)

    def close(self):
        pass


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def hosts_file(tmp_path):
    path = tmp_path / "hosts"
    path.write_text(
        "127.0.0.1 localhost\n"
        "::1 localhost ip6-localhost ip6-loopback\n"
        "192.168.1.10 nas.home nas\n",
        encoding="utf-8",
    )
    return path
