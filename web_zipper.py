#!/usr/bin/env python3
import argparse
import hashlib
import io
import logging
import os
import re
import sys
import zipfile
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import (
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

# url("a.png") | url('a.png') | url(a.png)
CSS_URL_RE = re.compile(
    r"""url\(\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<bare>[^)"'\s]*))\s*\)""",
    re.IGNORECASE,
)
ILLEGAL_NAME_CHARS_RE = re.compile(r"[&/\\#,+()$~%'\":*?<>{}]")

TRACKING_PARAM_PREFIXES = (
    "utm_",
    "gclid",
    "fbclid",
    "mc_",
    "yclid",
    "icid",
    "ref",
    "cmpid",
)
HTML_LIKE_EXTS = {".html", ".htm", ".php", ".asp", ".aspx", ".jsp", ".jspx", ".cfm"}
TITLE_STRIP_EXTS = HTML_LIKE_EXTS | {".css", ".js", ".mjs"}

RECOGNIZED_SCHEMES = {"http", "https"}
DEFAULT_INTERNAL_ORIGINS = (
    "chrome-extension://",
    "moz-extension://",
    "safari-web-extension://",
)

# archive directories double as resource kinds
KIND_PDF = "pdf"
KIND_IMG = "img"
KIND_CSS = "css"
KIND_JS = "js"
KIND_VIDEO = "video"
KIND_HTML = "html"

CSS_IMAGE_NAME_MAX = 50
SRI_ATTRS = ("integrity", "crossorigin", "referrerpolicy")

STATE_IDLE = "idle"
STATE_ESTIMATING = "estimating-depth-zero"
STATE_CRAWLING = "crawling"
STATE_PACKAGING = "packaging"
STATE_DONE = "done"


# -------------------- Errors --------------------


class MirrorError(Exception):
    pass


class InvalidBaseURL(MirrorError, ValueError):
    pass


class ResolutionFailure(MirrorError, ValueError):
    pass


class ParseFailure(MirrorError):
    pass


class ConcurrencyViolation(MirrorError, RuntimeError):
    pass


class ArchiveError(MirrorError):
    pass


class _Failed:
    """Falsy sentinel the fetcher returns instead of raising."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "FAILED"


FAILED = _Failed()
FetchResult = Union[bytes, str, _Failed]


# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 8
    retries: int = 0
    max_bytes: int = 50_000_000
    max_pages: int = 200
    strip_params: bool = True
    internal_origins: Tuple[str, ...] = DEFAULT_INTERNAL_ORIGINS
    user_agent: Optional[str] = None


@dataclass
class CrawlOptions:
    focus_mode: bool = False
    restrict_domain: bool = False
    include: Optional[str] = None
    exclude: Optional[str] = None
    # (link_url, start_url) -> follow?
    link_filter: Optional[Callable[[str, str], bool]] = None


# -------------------- Utils --------------------


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def strip_illegal(name: str) -> str:
    return ILLEGAL_NAME_CHARS_RE.sub("", name)


def sanitize_name(url: str) -> str:
    """Local file name for a resource: last path segment, no query, no illegal chars."""
    path = urlparse(url).path.rstrip("/")
    name = strip_illegal(path.rsplit("/", 1)[-1])
    if not name.strip("."):
        return "res_" + short_h(url)
    return name[:200]


def css_image_name(url: str) -> str:
    name = sanitize_name(url)
    return name[-CSS_IMAGE_NAME_MAX:]


def page_title(url: str) -> str:
    """Deterministic archive title from host + path."""
    p = urlparse(url)
    path = p.path.rstrip("/")
    stem, ext = os.path.splitext(path)
    if ext.lower() in TITLE_STRIP_EXTS:
        path = stem
    title = strip_illegal((p.netloc + path).replace("/", "_")).strip("._")
    if not title:
        return "page_" + short_h(url)
    return title[:200]


def disambiguate(name: str, url: str, attempt: int) -> str:
    stem, ext = os.path.splitext(name)
    tag = short_h(url) if attempt == 1 else f"{short_h(url)}_{attempt}"
    return f"{stem}_{tag}{ext}"


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def is_same_host(base: str, other: str) -> bool:
    return urlparse(base).netloc.lower() == urlparse(other).netloc.lower()


def in_focus(start_url: str, other: str) -> bool:
    if not is_same_host(start_url, other):
        return False
    start_path = urlparse(start_url).path or "/"
    prefix = start_path[: start_path.rfind("/") + 1] or "/"
    return (urlparse(other).path or "/").startswith(prefix)


def archive_filename(start_url: str) -> str:
    host = urlparse(start_url).hostname or "site"
    return f"{host}.zip"


# -------------------- URL resolution --------------------


def is_internal_origin(url: str, internal_origins: Sequence[str]) -> bool:
    low = url.lower()
    return any(low.startswith(o.lower()) for o in internal_origins)


def validate_base_url(base_url: str) -> None:
    try:
        p = urlparse(base_url)
    except ValueError as e:
        raise InvalidBaseURL(f"malformed base URL: {base_url!r}") from e
    if p.scheme.lower() not in RECOGNIZED_SCHEMES or not p.netloc:
        raise InvalidBaseURL(f"malformed base URL: {base_url!r}")


def resolve(
    reference: str,
    base_url: str,
    internal_origins: Sequence[str] = DEFAULT_INTERNAL_ORIGINS,
) -> str:
    validate_base_url(base_url)
    ref = (reference or "").strip()
    if not ref:
        raise ResolutionFailure("empty reference")
    if ref.startswith("//"):
        return "https:" + ref
    try:
        scheme = urlparse(ref).scheme.lower()
    except ValueError as e:
        raise ResolutionFailure(f"malformed reference: {ref!r}") from e
    if scheme in RECOGNIZED_SCHEMES:
        return ref
    if scheme and not is_internal_origin(ref, internal_origins):
        raise ResolutionFailure(f"unsupported scheme: {ref!r}")

    resolved = ref if scheme else urljoin(base_url, ref)
    if is_internal_origin(resolved, internal_origins):
        # the browser resolved against its own origin; keep only path onwards
        bogus = urlparse(resolved)
        local = urlunparse(
            ("", "", bogus.path, bogus.params, bogus.query, bogus.fragment)
        )
        resolved = urljoin(base_url, local)
    return resolved


def normalize_url(u: str, *, strip_params: bool) -> str:
    p = urlparse(u)
    path = p.path or "/"
    if not strip_params or not p.query:
        return urlunparse((p.scheme, p.netloc, path, p.params, p.query, ""))
    qs = parse_qsl(p.query, keep_blank_values=True)
    keep = [
        (k, v)
        for k, v in qs
        if not any(k.lower().startswith(pref) for pref in TRACKING_PARAM_PREFIXES)
    ]
    new_q = urlencode(keep, doseq=True)
    return urlunparse((p.scheme, p.netloc, path, p.params, new_q, ""))


def link_allowed(u: str, start_url: str, options: CrawlOptions) -> bool:
    if options.restrict_domain and not is_same_host(start_url, u):
        return False
    if options.focus_mode and not in_focus(start_url, u):
        return False
    if options.include and not re.search(options.include, u):
        return False
    if options.exclude and re.search(options.exclude, u):
        return False
    if options.link_filter is not None and not options.link_filter(u, start_url):
        return False
    return True


# -------------------- HTTP --------------------


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(
        max_retries=retry,
        pool_connections=max(10, settings.workers),
        pool_maxsize=max(10, settings.workers),
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    if settings.user_agent:
        s.headers["User-Agent"] = settings.user_agent
    return s


class Fetcher:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session if session is not None else build_session(settings)

    def _get(self, url: str, *, stream: bool = False) -> Optional[requests.Response]:
        try:
            r = self.session.get(url, timeout=self.settings.timeout, stream=stream)
        except requests.RequestException as e:
            logging.warning("error fetching %s: %s", url, e)
            return None
        if not 200 <= r.status_code < 300:
            logging.warning("failed %s -> HTTP %s", url, r.status_code)
            r.close()
            return None
        return r

    def _too_large(self, url: str, size: Optional[Union[str, int]]) -> bool:
        if size is None:
            return False
        try:
            n = int(size)
        except ValueError:
            return False
        if n > self.settings.max_bytes:
            logging.warning("skip large file %s (%s bytes)", url, n)
            return True
        return False

    def _decode(self, r: requests.Response) -> str:
        if not r.encoding:
            try:
                r.encoding = r.apparent_encoding or "utf-8"
            except Exception:
                r.encoding = "utf-8"
        return r.text

    def fetch_bytes(self, url: str) -> FetchResult:
        r = self._get(url, stream=True)
        if r is None:
            return FAILED
        try:
            if self._too_large(url, r.headers.get("Content-Length")):
                return FAILED
            buf = bytearray()
            for chunk in r.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                buf.extend(chunk)
                if self._too_large(url, len(buf)):
                    return FAILED
        except requests.RequestException as e:
            logging.warning("error downloading %s: %s", url, e)
            return FAILED
        finally:
            r.close()
        return bytes(buf)

    def fetch_text(self, url: str) -> FetchResult:
        r = self._get(url)
        if r is None:
            return FAILED
        if self._too_large(url, len(r.content)):
            return FAILED
        return self._decode(r)

    def fetch_page(self, url: str) -> FetchResult:
        r = self._get(url)
        if r is None:
            return FAILED
        if self._too_large(url, len(r.content)):
            return FAILED
        ct = (r.headers.get("Content-Type") or "").lower()
        if "text/html" not in ct and "application/xhtml+xml" not in ct:
            logging.info("not an HTML page, skipping: %s (%s)", url, ct or "no type")
            return FAILED
        return self._decode(r)

    def close(self) -> None:
        self.session.close()


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        try:
            return BeautifulSoup(html, "html.parser")
        except Exception as e:
            raise ParseFailure(f"unparseable HTML: {e}") from e


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag is None:
        return fallback
    candidate = urljoin(fallback, tag["href"])
    if urlparse(candidate).scheme.lower() not in RECOGNIZED_SCHEMES:
        return fallback
    return candidate


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def stylesheet_links(soup: BeautifulSoup) -> List[Tag]:
    out = []
    for link in soup.find_all("link", href=True):
        rels = {r.lower() for r in (link.get("rel") or [])}
        if "stylesheet" in rels:
            out.append(link)
    return out


def drop_srcset(img: Tag) -> None:
    """Remove remote srcset candidates so browsers fall back to the local src."""
    for attr in ("srcset", "sizes"):
        if attr in img.attrs:
            del img.attrs[attr]
    picture = img.parent
    if picture is not None and picture.name == "picture":
        for source in picture.find_all("source", srcset=True):
            del source["srcset"]


def pdf_anchors(
    soup: BeautifulSoup, base: str, internal_origins: Sequence[str]
) -> Iterator[Tuple[Tag, str]]:
    for a in soup.find_all("a", href=True):
        try:
            absolute = resolve(a["href"], base, internal_origins)
        except MirrorError:
            continue
        if ".pdf" in absolute.lower():
            yield a, absolute


def estimate_resources(
    html: str, page_url: str, internal_origins: Sequence[str]
) -> int:
    soup = bs4_parse(html)
    base = effective_base_url(soup, page_url)
    return (
        len(stylesheet_links(soup))
        + sum(1 for _ in pdf_anchors(soup, base, internal_origins))
        + len(soup.find_all("script", src=True))
        + len(soup.find_all("img"))
        + len(soup.find_all("iframe", src=True))
    )


def discover_links(
    html: str,
    page_url: str,
    start_url: str,
    options: CrawlOptions,
    settings: Settings,
) -> List[str]:
    soup = bs4_parse(html)
    base = effective_base_url(soup, page_url)
    found: List[str] = []
    seen: Set[str] = set()
    for a in soup.find_all("a", href=True):
        href = a["href"]
        if not can_fetch_url(href):
            continue
        try:
            absolute = resolve(href, base, settings.internal_origins)
        except MirrorError:
            logging.debug("unresolvable link %r on %s", href, page_url)
            continue
        if urlparse(absolute).path.lower().endswith(".pdf"):
            continue
        n = normalize_url(absolute, strip_params=settings.strip_params)
        if n in seen or not link_allowed(n, start_url, options):
            continue
        seen.add(n)
        found.append(n)
    return found


# -------------------- Resource registry --------------------


@dataclass(frozen=True)
class ResourceEntry:
    kind: str
    original_url: str
    local_name: str

    @property
    def local_path(self) -> str:
        return f"{self.kind}/{self.local_name}"

    @property
    def relative_ref(self) -> str:
        return f"../{self.local_path}"


class ResourceRegistry:
    """Per-kind dedup tables: local name -> URL it was scheduled for."""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Optional[str]]] = {}
        self._by_url: Dict[Tuple[str, str], str] = {}
        self._lock = Lock()

    def _record(self, kind: str, local_name: str, url: Optional[str]) -> bool:
        table = self._tables.setdefault(kind, {})
        if local_name in table:
            return False
        table[local_name] = url
        if url is not None:
            self._by_url[(kind, url)] = local_name
        return True

    def should_schedule(self, kind: str, local_name: str) -> bool:
        with self._lock:
            return self._record(kind, local_name, None)

    def claim(self, kind: str, url: str, local_name: str) -> Tuple[ResourceEntry, bool]:
        """Return the entry for url and whether this call scheduled it."""
        with self._lock:
            known = self._by_url.get((kind, url))
            if known is not None:
                return ResourceEntry(kind, url, known), False
            candidate = local_name
            attempt = 0
            while not self._record(kind, candidate, url):
                attempt += 1
                candidate = disambiguate(local_name, url, attempt)
            if attempt:
                logging.debug(
                    "name clash in %s/ for %s, using %s", kind, url, candidate
                )
            return ResourceEntry(kind, url, candidate), True

    def scheduled(self, kind: str) -> List[str]:
        with self._lock:
            return list(self._tables.get(kind, {}))


# -------------------- Archive --------------------


class Archive:
    def __init__(self) -> None:
        self._entries: Dict[str, bytes] = {}
        self._lock = Lock()

    def add(self, path: str, content: Union[bytes, str]) -> bool:
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        with self._lock:
            if path in self._entries:
                logging.debug("archive already holds %s", path)
                return False
            self._entries[path] = data
            return True

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def paths(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def get(self, path: str) -> Optional[bytes]:
        with self._lock:
            return self._entries.get(path)

    def to_bytes(self) -> bytes:
        buf = io.BytesIO()
        with self._lock:
            items = list(self._entries.items())
        try:
            with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as z:
                for path, data in items:
                    z.writestr(path, data)
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            raise ArchiveError(f"could not build archive: {e}") from e
        return buf.getvalue()

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


# -------------------- Progress --------------------


@dataclass
class ProgressState:
    processed: int = 0
    total: int = 0

    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, -(-self.processed * 100 // self.total))

    def text(self) -> str:
        return f"{self.percent()}%"


class ProgressTracker:
    def __init__(self, on_progress: Optional[Callable[[str], None]] = None) -> None:
        self.state = ProgressState()
        self._on_progress = on_progress
        self._lock = Lock()

    def set_total(self, total: int) -> None:
        with self._lock:
            self.state.total = max(total, self.state.processed)

    def advance(self, n: int = 1) -> None:
        with self._lock:
            self.state.processed = min(self.state.total, self.state.processed + n)
            text = self.state.text()
        self._report(text)

    def finish(self) -> None:
        with self._lock:
            self.state.processed = self.state.total
            text = self.state.text()
        self._report(text)

    def text(self) -> str:
        with self._lock:
            return self.state.text()

    def _report(self, text: str) -> None:
        if self._on_progress is not None:
            self._on_progress(text)


# -------------------- CSS localizer --------------------


class CssLocalizer:
    def __init__(self, registry: ResourceRegistry, settings: Settings) -> None:
        self.registry = registry
        self.settings = settings

    def _localize_ref(
        self, raw: str, css_url: str
    ) -> Optional[Tuple[ResourceEntry, bool]]:
        ref = raw.strip().replace("\\", "")
        if not ref or ref.startswith("#") or "xmlns" in ref:
            return None
        if ref.lower().startswith("data:"):
            return None
        absolute = resolve(ref, css_url, self.settings.internal_origins)
        return self.registry.claim(KIND_IMG, absolute, css_image_name(absolute))

    def localize(self, css_text: str, css_url: str) -> Tuple[str, List[ResourceEntry]]:
        """Rewrite url(...) references to ../img/<name>.

        Returns the new text and the image entries this call scheduled.
        """
        out: List[str] = []
        scheduled: List[ResourceEntry] = []
        last = 0
        for m in CSS_URL_RE.finditer(css_text):
            if m.group("dq") is not None:
                raw, quote = m.group("dq"), '"'
            elif m.group("sq") is not None:
                raw, quote = m.group("sq"), "'"
            else:
                raw, quote = m.group("bare"), ""
            try:
                claimed = self._localize_ref(raw, css_url)
            except Exception as e:
                logging.warning("css url(%s) in %s left as is: %s", raw, css_url, e)
                continue
            if claimed is None:
                continue
            entry, is_new = claimed
            out.append(css_text[last : m.start()])
            out.append(f"url({quote}{entry.relative_ref}{quote})")
            last = m.end()
            if is_new:
                scheduled.append(entry)
        out.append(css_text[last:])
        return "".join(out), scheduled


# -------------------- HTML localizer --------------------

MODE_BYTES = "bytes"
MODE_TEXT = "text"
MODE_CSS = "css"


@dataclass
class FetchJob:
    entry: ResourceEntry
    mode: str = MODE_BYTES


class HtmlLocalizer:
    def __init__(
        self,
        fetcher: "Fetcher",
        registry: ResourceRegistry,
        archive: Archive,
        settings: Settings,
    ) -> None:
        self.fetcher = fetcher
        self.registry = registry
        self.archive = archive
        self.settings = settings
        self.css = CssLocalizer(registry, settings)

    def localize(
        self,
        html: str,
        page_url: str,
        on_element: Optional[Callable[[], None]] = None,
    ) -> str:
        # phases run in order; each reparses the previous phase's output
        for phase in (
            self._pdf_phase,
            self._image_phase,
            self._stylesheet_phase,
            self._script_phase,
            self._video_phase,
            self._base_phase,
        ):
            html = self._run_phase(phase, html, page_url, on_element)
        return html

    def _run_phase(
        self,
        phase: Callable[[BeautifulSoup, str, List[FetchJob], Callable[[], None]], None],
        html: str,
        page_url: str,
        on_element: Optional[Callable[[], None]],
    ) -> str:
        try:
            soup = bs4_parse(html)
        except ParseFailure as e:
            logging.warning("%s skipped for %s: %s", phase.__name__, page_url, e)
            return html
        base = effective_base_url(soup, page_url)
        jobs: List[FetchJob] = []
        phase(soup, base, jobs, on_element or (lambda: None))
        self.fetch_all(jobs)
        return serialize_html(soup)

    def _resolve(self, reference: str, base: str) -> str:
        return resolve(reference, base, self.settings.internal_origins)

    def _rewrite(
        self,
        tag: Tag,
        attr: str,
        kind: str,
        absolute: str,
        name: str,
        mode: str,
        jobs: List[FetchJob],
    ) -> None:
        entry, is_new = self.registry.claim(kind, absolute, name)
        if is_new:
            jobs.append(FetchJob(entry, mode))
        else:
            logging.debug("already scheduled %s <- %s", entry.local_path, absolute)
        tag[attr] = entry.relative_ref

    def _pdf_phase(self, soup, base, jobs, on_element) -> None:
        anchors = list(pdf_anchors(soup, base, self.settings.internal_origins))
        for a, absolute in anchors:
            with _ElementGuard("pdf", a.get("href"), on_element):
                self._rewrite(
                    a,
                    "href",
                    KIND_PDF,
                    absolute,
                    sanitize_name(absolute),
                    MODE_BYTES,
                    jobs,
                )

    def _image_phase(self, soup, base, jobs, on_element) -> None:
        for img in soup.find_all("img"):
            src = img.get("src")
            with _ElementGuard("img", src, on_element):
                if not src or "base64" in src or src.strip().startswith("data:"):
                    continue
                absolute = self._resolve(src, base)
                self._rewrite(
                    img,
                    "src",
                    KIND_IMG,
                    absolute,
                    sanitize_name(absolute),
                    MODE_BYTES,
                    jobs,
                )
                drop_srcset(img)

    def _stylesheet_phase(self, soup, base, jobs, on_element) -> None:
        for link in stylesheet_links(soup):
            with _ElementGuard("stylesheet", link.get("href"), on_element):
                absolute = self._resolve(link["href"], base)
                name = page_title(absolute) + ".css"
                self._rewrite(link, "href", KIND_CSS, absolute, name, MODE_CSS, jobs)
                for attr in SRI_ATTRS:
                    if attr in link.attrs:
                        del link.attrs[attr]

    def _script_phase(self, soup, base, jobs, on_element) -> None:
        for script in soup.find_all("script", src=True):
            with _ElementGuard("script", script.get("src"), on_element):
                absolute = self._resolve(script["src"], base)
                name = page_title(absolute) + ".js"
                self._rewrite(script, "src", KIND_JS, absolute, name, MODE_TEXT, jobs)
                for attr in SRI_ATTRS:
                    if attr in script.attrs:
                        del script.attrs[attr]

    def _video_phase(self, soup, base, jobs, on_element) -> None:
        for frame in soup.find_all("iframe", src=True):
            with _ElementGuard("video", frame.get("src"), on_element):
                absolute = self._resolve(frame["src"], base)
                self._rewrite(
                    frame,
                    "src",
                    KIND_VIDEO,
                    absolute,
                    sanitize_name(absolute),
                    MODE_BYTES,
                    jobs,
                )

    def _base_phase(self, soup, base, jobs, on_element) -> None:
        # every reference is page-relative now
        for tag in soup.find_all("base", href=True):
            del tag["href"]
            if not tag.attrs:
                tag.decompose()

    def _load(self, job: FetchJob) -> Tuple[FetchResult, List[FetchJob]]:
        url = job.entry.original_url
        try:
            if job.mode == MODE_BYTES:
                return self.fetcher.fetch_bytes(url), []
            text = self.fetcher.fetch_text(url)
            if text is FAILED or job.mode == MODE_TEXT:
                return text, []
            css_text, entries = self.css.localize(text, url)
            return css_text, [FetchJob(e, MODE_BYTES) for e in entries]
        except Exception as e:
            logging.warning("error loading %s: %s", url, e)
            return FAILED, []

    def fetch_all(self, jobs: List[FetchJob]) -> None:
        """Fetch jobs concurrently and commit them; stylesheet images go next round."""
        while jobs:
            follow_up: List[FetchJob] = []
            with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
                future_map = {pool.submit(self._load, job): job for job in jobs}
                for fut in as_completed(future_map):
                    job = future_map[fut]
                    content, extra = fut.result()
                    if content is FAILED:
                        logging.warning(
                            "skipped %s: could not fetch %s",
                            job.entry.local_path,
                            job.entry.original_url,
                        )
                        continue
                    self.archive.add(job.entry.local_path, content)
                    follow_up.extend(extra)
            jobs = follow_up


class _ElementGuard:
    """Absorbs a failure on one element so its siblings still get processed."""

    def __init__(self, what: str, ref: Optional[str], on_element: Callable[[], None]):
        self.what = what
        self.ref = ref
        self.on_element = on_element

    def __enter__(self) -> "_ElementGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.on_element()
        if exc is None:
            return False
        if isinstance(exc, ResolutionFailure):
            logging.debug("%s %r left unmodified: %s", self.what, self.ref, exc)
        elif isinstance(exc, Exception):
            logging.warning("%s %r left unmodified: %s", self.what, self.ref, exc)
        else:
            return False
        return True


# -------------------- Crawl session --------------------


@dataclass
class CrawlResult:
    archive: bytes
    filename: str
    pages: List[str] = field(default_factory=list)
    entries: List[str] = field(default_factory=list)
    progress: str = "0%"


class DownloadGate:
    """Process-wide "download in progress" flag."""

    def __init__(self) -> None:
        self._busy = False
        self._lock = Lock()

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    @contextmanager
    def hold(self) -> Iterator[None]:
        with self._lock:
            if self._busy:
                raise ConcurrencyViolation("a download is already in progress")
            self._busy = True
        try:
            yield
        finally:
            with self._lock:
                self._busy = False


DOWNLOAD_GATE = DownloadGate()


class CrawlSession:
    def __init__(
        self,
        start_url: str,
        max_depth: int,
        options: CrawlOptions,
        settings: Settings,
        fetcher: "Fetcher",
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> None:
        validate_base_url(start_url)
        self.start_url = normalize_url(start_url, strip_params=settings.strip_params)
        self.max_depth = max(0, int(max_depth))
        self.options = options
        self.settings = settings
        self.fetcher = fetcher
        self.frontier: Deque[Tuple[str, int]] = deque()
        self.visited: Set[str] = set()
        self.registry = ResourceRegistry()
        self.archive = Archive()
        self._on_progress = on_progress
        self.progress = ProgressTracker(on_progress)
        self.localizer = HtmlLocalizer(fetcher, self.registry, self.archive, settings)
        self.pages: List[str] = []
        self.pages_done = 0
        self.state = STATE_IDLE

    @property
    def single_page(self) -> bool:
        return self.max_depth == 0

    def _set_state(self, state: str) -> None:
        logging.debug("crawl %s: %s -> %s", self.start_url, self.state, state)
        self.state = state

    def _enqueue(self, url: str, depth: int) -> bool:
        if url in self.visited:
            return False
        self.visited.add(url)
        self.frontier.append((url, depth))
        if not self.single_page:
            self.progress.set_total(min(len(self.visited), self.settings.max_pages))
        return True

    def run(self) -> CrawlResult:
        self._enqueue(self.start_url, 0)
        self._set_state(STATE_ESTIMATING if self.single_page else STATE_CRAWLING)
        while self.frontier and self.pages_done < self.settings.max_pages:
            url, depth = self.frontier.popleft()
            self._crawl_page(url, depth)
        if self.frontier:
            logging.info(
                "page limit %d reached, %d queued pages not crawled",
                self.settings.max_pages,
                len(self.frontier),
            )

        self._set_state(STATE_PACKAGING)
        try:
            blob = self.archive.to_bytes()
            self.progress.finish()
            result = CrawlResult(
                archive=blob,
                filename=archive_filename(self.start_url),
                pages=list(self.pages),
                entries=self.archive.paths(),
                progress=self.progress.text(),
            )
        finally:
            self.reset()
        self._set_state(STATE_DONE)
        return result

    def _crawl_page(self, url: str, depth: int) -> None:
        logging.info(
            "Fetch page [%d/%d] depth=%d: %s",
            self.pages_done + 1,
            len(self.visited),
            depth,
            url,
        )
        html = self.fetcher.fetch_page(url)
        if html is FAILED:
            logging.warning("skipping page %s: fetch failed", url)
            self._page_done()
            return

        try:
            if depth < self.max_depth:
                for link in discover_links(
                    html, url, self.start_url, self.options, self.settings
                ):
                    self._enqueue(link, depth + 1)

            on_element = None
            if self.single_page:
                self.progress.set_total(
                    estimate_resources(html, url, self.settings.internal_origins)
                )
                self._set_state(STATE_CRAWLING)
                on_element = self.progress.advance

            localized = self.localizer.localize(html, url, on_element=on_element)
        except Exception as e:
            logging.warning("error localizing %s: %s", url, e)
            self._page_done()
            return

        entry, _ = self.registry.claim(KIND_HTML, url, page_title(url) + ".html")
        path = entry.local_name if self.single_page else entry.local_path
        self.archive.add(path, localized)
        self.pages.append(url)
        self._page_done()

    def _page_done(self) -> None:
        self.pages_done += 1
        if not self.single_page:
            self.progress.advance()

    def reset(self) -> None:
        self.frontier.clear()
        self.visited.clear()
        self.pages = []
        self.pages_done = 0
        self.registry = ResourceRegistry()
        self.archive.reset()
        self.progress = ProgressTracker(self._on_progress)
        self.localizer = HtmlLocalizer(
            self.fetcher, self.registry, self.archive, self.settings
        )


def start_crawl(
    start_url: str,
    max_depth: int = 0,
    options: Optional[CrawlOptions] = None,
    *,
    settings: Optional[Settings] = None,
    fetcher: Optional["Fetcher"] = None,
    on_progress: Optional[Callable[[str], None]] = None,
    gate: Optional[DownloadGate] = None,
) -> CrawlResult:
    options = options or CrawlOptions()
    settings = settings or Settings()
    validate_base_url(start_url)
    gate = gate if gate is not None else DOWNLOAD_GATE
    with gate.hold():
        owned = fetcher is None
        if fetcher is None:
            fetcher = Fetcher(settings)
        try:
            session = CrawlSession(
                start_url, max_depth, options, settings, fetcher, on_progress
            )
            return session.run()
        finally:
            if owned:
                fetcher.close()


def save_archive(
    result: CrawlResult,
    output_dir: Union[str, Path],
    on_saved: Optional[Callable[[Path], None]] = None,
) -> Path:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / result.filename
    path.write_bytes(result.archive)
    logging.info("archive written: %s (%d bytes)", path, len(result.archive))
    if on_saved is not None:
        on_saved(path)
    return path


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            import tomli as tomllib
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError(
                "YAML config requires 'PyYAML' (pip install web-zipper[yaml])"
            )
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Mirror a page and the pages it links to into one zip archive.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL of the start page")
    p.add_argument(
        "output_folder", nargs="?", default=".", help="directory for the archive"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # crawl
    p.add_argument(
        "--depth",
        type=int,
        default=0,
        help="link hops to follow (0 = only the start page)",
    )
    p.add_argument(
        "--focus-mode",
        action="store_true",
        help="only follow links below the start page's directory",
    )
    p.add_argument(
        "--restrict-domain",
        action="store_true",
        help="only follow links on the start page's host",
    )
    p.add_argument(
        "--include", type=str, default=None, help="only crawl URLs matching regex"
    )
    p.add_argument("--exclude", type=str, default=None, help="skip URLs matching regex")
    p.add_argument("--max-pages", type=int, default=200, help="max HTML pages")
    p.add_argument(
        "--no-strip-params", action="store_true", help="keep all query parameters"
    )

    # network
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--workers", type=int, default=8, help="concurrent downloads")
    p.add_argument("--retries", type=int, default=0, help="retries per request")
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per file"
    )
    p.add_argument("--user-agent", type=str, default=None, help="User-Agent header")
    p.add_argument(
        "--internal-origin",
        action="append",
        default=[],
        help="URL prefix of a bogus origin to re-resolve against the page",
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("crawl", "network", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Tuple[Settings, CrawlOptions]:
    settings = Settings(
        timeout=args.timeout,
        workers=max(1, args.workers),
        retries=max(0, args.retries),
        max_bytes=max(1024, args.max_bytes),
        max_pages=max(1, args.max_pages),
        strip_params=not args.no_strip_params,
        internal_origins=DEFAULT_INTERNAL_ORIGINS + tuple(args.internal_origin or []),
        user_agent=args.user_agent,
    )
    options = CrawlOptions(
        focus_mode=args.focus_mode,
        restrict_domain=args.restrict_domain,
        include=args.include,
        exclude=args.exclude,
    )
    return settings, options


def print_progress(text: str) -> None:
    sys.stderr.write(f"\rProgress: {text:>4}")
    sys.stderr.flush()


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    if urlparse(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    settings, options = settings_from_args(args)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    print("Reminder: only archive content you own or have permission to copy.")
    try:
        result = start_crawl(
            args.url,
            max(0, args.depth),
            options,
            settings=settings,
            on_progress=print_progress,
        )
    except MirrorError as e:
        print(f"Critical error: {e}")
        sys.exit(1)
    sys.stderr.write("\n")

    path = save_archive(result, args.output_folder)
    print("Archive complete")
    print(f"Pages saved: {len(result.pages)}")
    print(f"Saved to: {path}")


if __name__ == "__main__":
    main()
