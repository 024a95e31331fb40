import io
import threading
import zipfile
from typing import Dict

import pytest

import web_zipper as wz


class FakeFetcher:
    """In-memory stand-in for Fetcher, keyed by absolute URL."""

    def __init__(self, pages=None, resources=None):
        self.pages = dict(pages or {})
        self.resources = dict(resources or {})
        self.calls = []
        self._lock = threading.Lock()

    def _log(self, kind, url):
        with self._lock:
            self.calls.append((kind, url))

    def fetch_page(self, url):
        self._log("page", url)
        return self.pages.get(url, wz.FAILED)

    def fetch_text(self, url):
        self._log("text", url)
        v = self.resources.get(url, wz.FAILED)
        if isinstance(v, bytes):
            return v.decode("utf-8")
        return v

    def fetch_bytes(self, url):
        self._log("bytes", url)
        v = self.resources.get(url, wz.FAILED)
        if isinstance(v, str):
            return v.encode("utf-8")
        return v

    def count(self, url, kind=None):
        return sum(1 for k, u in self.calls if u == url and (kind is None or k == kind))


@pytest.fixture
def fetcher_factory():
    return FakeFetcher


@pytest.fixture
def settings():
    return wz.Settings(workers=4)


@pytest.fixture
def gate():
    return wz.DownloadGate()


@pytest.fixture
def unzip():
    def _unzip(blob: bytes) -> Dict[str, bytes]:
        with zipfile.ZipFile(io.BytesIO(blob)) as z:
            return {name: z.read(name) for name in z.namelist()}

    return _unzip


@pytest.fixture
def localizer_factory(settings):
    def _make(resources=None):
        fetcher = FakeFetcher(resources=resources)
        registry = wz.ResourceRegistry()
        archive = wz.Archive()
        localizer = wz.HtmlLocalizer(fetcher, registry, archive, settings)
        return localizer, archive, registry, fetcher

    return _make
