"""
Crawler Engine - budgeted site crawler with network safety gates.

Architecture:
- Every URL (initial fetch, each redirect hop, sitemap, probe) passes URLGuard
- Discovery via robots.txt sitemaps, well-known sitemap paths, or link following
- Manual redirect handling so every hop can be validated and recorded
- Bounded concurrency under a single global politeness limiter and page budget
- One HTML parse per page extracts every CrawledPage signal
- Broken internal links from crawl errors plus a capped HEAD probe sample
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import math
import random
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator
from urllib.parse import urljoin, urlparse

import httpx
import structlog
from bs4 import BeautifulSoup

from site_audit.core.config import Settings, get_settings
from site_audit.core.errors import CrawlFailedError, FetchError, UnsafeURLError
from site_audit.engines.base import (
    AuditEngine,
    BrokenLink,
    CrawledPage,
    CrawlError,
    CrawlResult,
    DiscoverEvent,
    DoneEvent,
    RedirectChain,
    ScoredSectionEvent,
    SectionInfo,
    SectionsEvent,
    SitemapEvent,
)

logger = structlog.get_logger(__name__)

# Errors that mean "this URL could not be fetched"; anything else is a bug
FETCH_ERRORS = (FetchError, UnsafeURLError, httpx.HTTPError)


# ─────────────────────────────────────────────
# Data Structures
# ─────────────────────────────────────────────

@dataclass
class FetchResult:
    content: str
    final_url: str
    redirect_chain: list[str] | None = None   # None when no redirect was followed


@dataclass
class SitemapResult:
    urls: list[str] = field(default_factory=list)
    has_robots_txt: bool = False


@dataclass
class RateLimiter:
    """
    Token bucket rate limiter.
    With max_tokens=1 it enforces a fixed minimum gap between acquisitions
    across every task sharing the instance.
    """
    rate: float  # Tokens per second
    max_tokens: float
    tokens: float = field(init=False)
    last_refill: float = field(default_factory=time.monotonic, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self):
        self.tokens = self.max_tokens

    @classmethod
    def from_delay(cls, delay_seconds: float) -> RateLimiter | None:
        if delay_seconds <= 0:
            return None
        return cls(rate=1.0 / delay_seconds, max_tokens=1.0)

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_refill
            self.tokens = min(self.max_tokens, self.tokens + elapsed * self.rate)
            self.last_refill = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_refill = time.monotonic()
            else:
                self.tokens -= 1


# ─────────────────────────────────────────────
# Safety gate
# ─────────────────────────────────────────────

BLOCKED_HOSTS = frozenset({
    "localhost",
    "127.0.0.1",
    "0.0.0.0",
    "[::1]",
    "::1",
    "metadata.google.internal",
    "169.254.169.254",
})


class URLGuard:
    """Rejects non-HTTP schemes and hosts on private or special-purpose networks."""

    ALLOWED_SCHEMES = ("http", "https")

    @classmethod
    def is_blocked_host(cls, hostname: str) -> bool:
        host = hostname.lower().rstrip(".")
        if host in BLOCKED_HOSTS:
            return True
        try:
            ip = ipaddress.ip_address(host.strip("[]"))
        except ValueError:
            return False
        return (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_unspecified
            or ip.is_reserved
            or ip.is_multicast
        )

    @classmethod
    def validate(cls, url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in cls.ALLOWED_SCHEMES:
            raise UnsafeURLError(f"Invalid protocol: {parsed.scheme or '(none)'}")
        hostname = parsed.hostname
        if not hostname:
            raise UnsafeURLError(f"Missing host: {url}")
        if cls.is_blocked_host(hostname):
            raise UnsafeURLError(f"Blocked host: {hostname}")


# ─────────────────────────────────────────────
# URL Utilities
# ─────────────────────────────────────────────

# Account, checkout and legal sections carry no audit value
IGNORED_SECTIONS = frozenset({
    "/login", "/logout", "/signin", "/signout", "/signup", "/register",
    "/auth", "/oauth", "/sso", "/settings", "/account", "/profile",
    "/dashboard", "/admin", "/cart", "/checkout", "/404", "/500", "/error",
    "/privacy", "/terms", "/legal", "/cookies", "/unsubscribe", "/confirm",
    "/verify", "/reset", "/forgot", "/invite",
})


def origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def get_section(url: str, base_url: str) -> str:
    """First path segment ("/docs"), "/" for the root, "" for other hosts."""
    parsed = urlparse(url)
    if parsed.hostname != urlparse(base_url).hostname:
        return ""
    segments = [s for s in parsed.path.split("/") if s]
    if not segments:
        return "/"
    return f"/{segments[0]}"


def should_skip_url(url: str, base_url: str) -> bool:
    return get_section(url, base_url) in IGNORED_SECTIONS


def group_by_section(urls: list[str], base_url: str) -> list[SectionInfo]:
    counts: dict[str, int] = {}
    for url in urls:
        section = get_section(url, base_url)
        if section:
            counts[section] = counts.get(section, 0) + 1
    sections = [
        SectionInfo(path=path, page_count=count)
        for path, count in counts.items()
        if path not in IGNORED_SECTIONS
    ]
    return sorted(sections, key=lambda s: s.page_count, reverse=True)


def extract_links(soup: BeautifulSoup, page_url: str) -> list[str]:
    """Same-hostname links without fragments, one trailing slash stripped, deduplicated in order."""
    base_host = urlparse(page_url).hostname
    links: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href:
            continue
        try:
            resolved = urljoin(page_url, href)
            parsed = urlparse(resolved)
        except ValueError:
            continue
        if parsed.hostname != base_host or parsed.fragment:
            continue
        if resolved.endswith("/"):
            resolved = resolved[:-1]
        links[resolved] = None
    return list(links)


# ─────────────────────────────────────────────
# Readability
# ─────────────────────────────────────────────

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_VOWEL_GROUPS = re.compile(r"[aeiouy]+")


def count_syllables(word: str) -> int:
    word = re.sub(r"[^a-z]", "", word.lower())
    if not word:
        return 0
    groups = len(_VOWEL_GROUPS.findall(word))
    if word.endswith("e") and not word.endswith(("le", "ee")) and groups > 1:
        groups -= 1
    return max(1, groups)


def flesch_kincaid_grade(text: str) -> float:
    words = text.split()
    if not words:
        return 0.0
    sentences = len([s for s in _SENTENCE_SPLIT.split(text) if s.strip()]) or 1
    syllables = sum(count_syllables(w) for w in words)
    return 0.39 * (len(words) / sentences) + 11.8 * (syllables / len(words)) - 15.59


# ─────────────────────────────────────────────
# Sitemap Parser
# ─────────────────────────────────────────────

class SitemapParser:
    """Discover and parse XML sitemaps."""

    ROBOTS_SITEMAP = re.compile(r"Sitemap:\s*(.+)", re.IGNORECASE)
    WELL_KNOWN_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/sitemap-0.xml")

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings):
        self.http_client = http_client
        self.settings = settings

    async def discover(self, base_url: str) -> SitemapResult:
        """First candidate that yields any URL wins; robots.txt sitemaps are tried first."""
        has_robots, robots_sitemaps = await self._read_robots(base_url)
        candidates = robots_sitemaps + [f"{base_url}{path}" for path in self.WELL_KNOWN_PATHS]

        for candidate in candidates:
            urls = await self._fetch_sitemap(candidate, 0)
            if urls:
                logger.info("Sitemap found", sitemap=candidate, url_count=len(urls))
                return SitemapResult(urls=urls, has_robots_txt=has_robots)

        return SitemapResult(urls=[], has_robots_txt=has_robots)

    async def _read_robots(self, base_url: str) -> tuple[bool, list[str]]:
        robots_url = f"{base_url}/robots.txt"
        try:
            URLGuard.validate(robots_url)
            response = await self.http_client.get(robots_url, timeout=self.settings.CRAWLER_REQUEST_TIMEOUT)
        except (UnsafeURLError, httpx.HTTPError) as e:
            logger.debug("Could not fetch robots.txt", url=robots_url, error=str(e))
            return False, []

        if not response.is_success:
            return False, []

        sitemaps = [m.group(1).strip() for m in self.ROBOTS_SITEMAP.finditer(response.text)]
        return True, [s for s in sitemaps if s]

    async def _fetch_sitemap(self, url: str, depth: int) -> list[str]:
        """Fetch one sitemap; nested sitemap indexes are expanded up to the depth bound."""
        if depth > self.settings.CRAWLER_MAX_SITEMAP_DEPTH:
            return []

        try:
            URLGuard.validate(url)
            response = await self.http_client.get(url, timeout=self.settings.CRAWLER_REQUEST_TIMEOUT)
        except (UnsafeURLError, httpx.HTTPError) as e:
            logger.debug("Sitemap fetch failed", url=url, error=str(e))
            return []

        if not response.is_success:
            return []

        soup = BeautifulSoup(response.text, "xml")
        page_urls: list[str] = []
        nested: list[str] = []

        for entry in soup.find_all("url"):
            loc = entry.find("loc", recursive=False)
            if loc and loc.get_text(strip=True):
                page_urls.append(loc.get_text(strip=True))

        for entry in soup.find_all("sitemap"):
            loc = entry.find("loc", recursive=False)
            if loc and loc.get_text(strip=True):
                nested.append(loc.get_text(strip=True))

        nested_results = await asyncio.gather(
            *[self._fetch_sitemap(n, depth + 1) for n in nested]
        )
        for urls in nested_results:
            page_urls.extend(urls)
        return page_urls


# ─────────────────────────────────────────────
# Page Fetcher
# ─────────────────────────────────────────────

class PageFetcher:
    """
    Fetches pages with redirects followed by hand, never by the HTTP client,
    so every hop is validated by URLGuard and recorded in the chain.
    """

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings):
        self.http_client = http_client
        self.settings = settings

    async def fetch(self, url: str) -> FetchResult:
        URLGuard.validate(url)
        chain = [url]
        current = url

        for _ in range(self.settings.CRAWLER_MAX_REDIRECTS):
            response = await self.http_client.get(
                current,
                follow_redirects=False,
                timeout=self.settings.CRAWLER_REQUEST_TIMEOUT,
            )

            if 300 <= response.status_code < 400:
                location = response.headers.get("location")
                if not location:
                    raise FetchError(f"Redirect {response.status_code} without Location header")
                next_url = urljoin(current, location)
                URLGuard.validate(next_url)
                chain.append(next_url)
                current = next_url
                continue

            if not response.is_success:
                raise FetchError(f"HTTP {response.status_code}")

            return FetchResult(
                content=response.text,
                final_url=current,
                redirect_chain=chain if len(chain) > 1 else None,
            )

        raise FetchError(f"Too many redirects (>{self.settings.CRAWLER_MAX_REDIRECTS})")

    async def probe(self, url: str) -> int | None:
        """Status-only HEAD request. None when the URL is unsafe or unreachable."""
        try:
            URLGuard.validate(url)
            response = await self.http_client.head(
                url,
                follow_redirects=False,
                timeout=self.settings.CRAWLER_PROBE_TIMEOUT,
            )
        except (UnsafeURLError, httpx.HTTPError):
            return None
        return response.status_code


# ─────────────────────────────────────────────
# Page Parser
# ─────────────────────────────────────────────

def _text(tag) -> str:
    return " ".join(tag.get_text(" ").split())


def _attr(soup: BeautifulSoup, name: str, attrs: dict[str, str], key: str) -> str | None:
    tag = soup.find(name, attrs=attrs)
    if tag is None:
        return None
    value = tag.get(key)
    if isinstance(value, list):
        value = " ".join(value)
    return (value or "").strip() or None


class PageParser:
    """Derives every CrawledPage signal from a single parse of the page."""

    STRIPPED_CHROME = ["script", "style", "nav", "footer", "aside"]
    MAX_CODE_BLOCKS = 5
    CODE_BLOCK_CHARS = 500
    MIN_READABILITY_WORDS = 30

    def __init__(self, settings: Settings):
        self.settings = settings

    def parse(self, html: str, url: str, base_url: str) -> CrawledPage:
        soup = BeautifulSoup(html, "lxml")

        outbound_links = extract_links(soup, url)

        pre_tags = soup.find_all("pre")
        images = soup.find_all("img")
        images_without_alt = sum(1 for img in images if not (img.get("alt") or "").strip())
        code_blocks = [
            block
            for block in (pre.get_text().strip()[: self.CODE_BLOCK_CHARS] for pre in pre_tags[: self.MAX_CODE_BLOCKS])
            if block
        ]

        # Title and H1 are read before chrome removal; H1 often lives in <header>
        title_tag = soup.find("title")
        title = _text(title_tag) if title_tag else ""
        h1_tags = soup.find_all("h1")
        h1 = _text(h1_tags[0]) if h1_tags else ""

        h2s = [t for t in (_text(h) for h in soup.find_all("h2")) if t]
        h3s = [t for t in (_text(h) for h in soup.find_all("h3")) if t]

        schema_types = self._schema_types(soup)
        has_schema_org = bool(schema_types) or soup.find(attrs={"itemtype": True}) is not None

        page_kwargs = dict(
            url=url,
            title=title or None,
            h1=h1 or None,
            h1_count=len(h1_tags),
            section=get_section(url, base_url),
            outbound_links=outbound_links,
            h2s=h2s,
            h3s=h3s,
            meta_description=_attr(soup, "meta", {"name": "description"}, "content"),
            canonical_url=_attr(soup, "link", {"rel": "canonical"}, "href"),
            og_title=_attr(soup, "meta", {"property": "og:title"}, "content"),
            og_description=_attr(soup, "meta", {"property": "og:description"}, "content"),
            og_image=_attr(soup, "meta", {"property": "og:image"}, "content"),
            has_schema_org=has_schema_org,
            schema_types=schema_types,
            has_viewport=soup.find("meta", attrs={"name": "viewport"}) is not None,
            code_block_count=len(pre_tags),
            code_blocks=code_blocks,
            image_count=len(images),
            images_without_alt=images_without_alt,
        )

        for tag in soup(self.STRIPPED_CHROME):
            tag.decompose()

        content = ""
        for container in ("main", "article", "body"):
            content = " ".join(" ".join(node.get_text(" ") for node in soup.find_all(container)).split())
            if content:
                break
        content = content[: self.settings.CRAWLER_CONTENT_MAX_CHARS]
        word_count = len(content.split())

        # Code skews sentence metrics, so readability is measured on prose only
        readability_score = None
        if content and word_count >= self.MIN_READABILITY_WORDS:
            for tag in soup(["pre", "code"]):
                tag.decompose()
            prose_root = soup.select_one("main, article, body")
            prose = _text(prose_root) if prose_root else ""
            if len(prose.split()) >= self.MIN_READABILITY_WORDS:
                grade = flesch_kincaid_grade(prose)
                if math.isfinite(grade) and 0 <= grade <= 20:
                    readability_score = round(grade, 1)

        return CrawledPage(
            content=content or None,
            word_count=word_count,
            readability_score=readability_score,
            **page_kwargs,
        )

    @staticmethod
    def _schema_types(soup: BeautifulSoup) -> list[str]:
        types: list[str] = []
        for script in soup.find_all("script", type="application/ld+json"):
            try:
                data = json.loads(script.get_text())
            except ValueError:
                continue
            items = data if isinstance(data, list) else [data]
            for item in items:
                if not isinstance(item, dict) or "@type" not in item:
                    continue
                value = item["@type"]
                types.extend(str(v) for v in (value if isinstance(value, list) else [value]))
        return types


def score_page_content(html: str) -> int:
    """Heuristic 0-10 score of how much a page looks like substantive content."""
    soup = BeautifulSoup(html, "lxml")
    score = 0

    has_headings = soup.find(["h2", "h3"]) is not None
    has_code = soup.find(["pre", "code"]) is not None
    has_semantic = soup.find(["article", "main"]) is not None
    has_sidebar = (
        soup.find("aside") is not None
        or soup.select_one('[class*="sidebar"], [class*="toc"], [class*="table-of-contents"]') is not None
    )
    ld_json = " ".join(s.get_text() for s in soup.find_all("script", type="application/ld+json")).lower()
    has_article_schema = "article" in ld_json or soup.select_one('[itemtype*="Article"]') is not None

    for tag in soup(["script", "style", "nav", "footer", "header"]):
        tag.decompose()
    word_count = len(soup.get_text(" ").split())

    if word_count > 300:
        score += 2
    if word_count > 1000:
        score += 1
    if has_headings:
        score += 2
    if has_code:
        score += 2
    if has_semantic:
        score += 1
    if has_sidebar:
        score += 1
    if has_article_schema:
        score += 1
    return score


# ─────────────────────────────────────────────
# Broken links
# ─────────────────────────────────────────────

HTTP_STATUS_IN_ERROR = re.compile(r"HTTP (\d+)")


class BrokenLinkChecker:
    """Reports internal links that failed during the crawl and probes a sample of uncrawled ones."""

    def __init__(self, fetcher: PageFetcher, settings: Settings, rate_limiter: RateLimiter | None = None):
        self.fetcher = fetcher
        self.settings = settings
        self.rate_limiter = rate_limiter

    async def check(self, pages: list[CrawledPage], errors: list[CrawlError]) -> list[BrokenLink]:
        crawled = {p.url for p in pages}
        error_by_url: dict[str, str] = {}
        for err in errors:
            error_by_url.setdefault(err.url, err.error)

        broken: list[BrokenLink] = []
        uncrawled: dict[str, list[str]] = {}   # target -> source pages

        for page in pages:
            for link in page.outbound_links:
                if link in error_by_url:
                    match = HTTP_STATUS_IN_ERROR.search(error_by_url[link])
                    broken.append(BrokenLink(
                        source_url=page.url,
                        target_url=link,
                        status_code=int(match.group(1)) if match else None,
                    ))
                elif link not in crawled:
                    uncrawled.setdefault(link, []).append(page.url)

        sample = list(uncrawled.items())[: self.settings.CRAWLER_BROKEN_LINK_SAMPLE]
        if sample:
            logger.debug("Probing uncrawled internal links", count=len(sample))

        for target, sources in sample:
            if self.rate_limiter:
                await self.rate_limiter.acquire()
            status = await self.fetcher.probe(target)
            if status and status >= 400:
                broken.extend(
                    BrokenLink(source_url=source, target_url=target, status_code=status)
                    for source in sources
                )

        return broken


# ─────────────────────────────────────────────
# Main Crawler
# ─────────────────────────────────────────────

class CrawlerEngine(AuditEngine):
    """
    Budgeted site crawler.

    Flow:
    1. Discover sitemap URLs (robots.txt first, then well-known paths)
    2. Seed the FIFO queue with filtered sitemap URLs, or the root URL
    3. Fetch in batches no larger than the remaining budget, one global politeness gate
    4. Follow same-origin links only when no sitemap was found
    5. Group pages into sections and detect broken links
    """

    ENGINE_NAME = "crawler"

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ):
        super().__init__()
        self.settings = settings or get_settings()
        self.transport = transport
        self.rng = rng or random.Random()
        self.parser = PageParser(self.settings)

    def _client(self) -> httpx.AsyncClient:
        headers = {
            "User-Agent": self.settings.CRAWLER_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        return httpx.AsyncClient(
            headers=headers,
            follow_redirects=False,
            timeout=self.settings.CRAWLER_REQUEST_TIMEOUT,
            limits=httpx.Limits(max_connections=self.settings.CRAWLER_MAX_CONCURRENCY + 5),
            transport=self.transport,
        )

    async def crawl(
        self,
        root_url: str,
        max_pages: int,
        section_filter: list[str] | None = None,
    ) -> CrawlResult:
        """Crawl up to max_pages pages. Raises CrawlFailedError when nothing could be fetched."""
        base_url = origin(root_url)
        self.logger.info("Starting crawl", site_url=root_url, max_pages=max_pages, sections=section_filter)

        def matches_filter(url: str) -> bool:
            if not section_filter:
                return True
            return get_section(url, base_url) in section_filter

        pages: list[CrawledPage] = []
        errors: list[CrawlError] = []
        redirect_chains: list[RedirectChain] = []
        visited: set[str] = set()
        queue: deque[str] = deque()
        rate_limiter = RateLimiter.from_delay(self.settings.CRAWLER_POLITENESS_DELAY)
        concurrency = max(1, self.settings.CRAWLER_MAX_CONCURRENCY)

        async with self._client() as http_client:
            fetcher = PageFetcher(http_client, self.settings)
            sitemap = await SitemapParser(http_client, self.settings).discover(base_url)

            if sitemap.urls:
                seeds = [u for u in sitemap.urls if not should_skip_url(u, base_url) and matches_filter(u)]
                self.logger.info("Seeding from sitemap", sitemap_urls=len(sitemap.urls), after_filter=len(seeds))
                queue.extend(seeds)
            else:
                self.logger.info("No sitemap found, starting from root URL")
                queue.append(root_url)

            async def crawl_url(url: str) -> tuple[CrawledPage, FetchResult]:
                if rate_limiter:
                    await rate_limiter.acquire()
                result = await fetcher.fetch(url)
                return self.parser.parse(result.content, url, base_url), result

            while queue and len(pages) < max_pages:
                batch: list[str] = []
                batch_size = min(concurrency, max_pages - len(pages))
                while queue and len(batch) < batch_size:
                    url = queue.popleft()
                    if url in visited:
                        continue
                    visited.add(url)
                    batch.append(url)

                outcomes = await asyncio.gather(*[crawl_url(u) for u in batch], return_exceptions=True)

                for url, outcome in zip(batch, outcomes):
                    if isinstance(outcome, FETCH_ERRORS):
                        message = str(outcome) or outcome.__class__.__name__
                        self.logger.debug("Crawl error", url=url, error=message)
                        errors.append(CrawlError(url=url, error=message))
                        continue
                    if isinstance(outcome, BaseException):
                        raise outcome

                    page, result = outcome
                    pages.append(page)
                    self.logger.debug("Crawled page", url=url, progress=f"{len(pages)}/{max_pages}")

                    # Chains of 4+ URLs (3+ hops) are reported
                    if result.redirect_chain and len(result.redirect_chain) > 3:
                        redirect_chains.append(RedirectChain(
                            original_url=url,
                            final_url=result.final_url,
                            hops=len(result.redirect_chain) - 1,
                            chain=result.redirect_chain,
                        ))

                    if len(pages) < max_pages and not sitemap.urls:
                        for link in page.outbound_links:
                            if (
                                link not in visited
                                and link.startswith(root_url)
                                and not should_skip_url(link, base_url)
                                and matches_filter(link)
                            ):
                                queue.append(link)

            if not pages:
                self.logger.warning("Crawl produced no pages", site_url=root_url, errors=len(errors))
                raise CrawlFailedError(root_url, len(errors))

            checker = BrokenLinkChecker(fetcher, self.settings, rate_limiter)
            broken_links = await checker.check(pages, errors)

        result = CrawlResult(
            pages=pages,
            sections=group_by_section([p.url for p in pages], base_url),
            errors=errors,
            broken_links=broken_links,
            redirect_chains=redirect_chains,
            sitemap_url_count=len(sitemap.urls),
            has_robots_txt=sitemap.has_robots_txt,
            has_sitemap=bool(sitemap.urls),
        )
        self.logger.info(
            "Crawl complete",
            pages=len(pages),
            errors=len(errors),
            broken_links=len(broken_links),
            redirect_chains=len(redirect_chains),
        )
        return result

    async def discover_sections_stream(self, site_url: str) -> AsyncIterator[DiscoverEvent]:
        """
        Stream section discovery for a site: the URL total, the raw section
        list, every section whose sampled content scores high enough, then done.
        """
        base_url = origin(site_url)
        self.logger.info("Streaming discovery", site_url=site_url)

        async with self._client() as http_client:
            fetcher = PageFetcher(http_client, self.settings)
            sitemap = await SitemapParser(http_client, self.settings).discover(base_url)

            if sitemap.urls:
                all_urls = sitemap.urls
            else:
                try:
                    result = await fetcher.fetch(site_url)
                except FETCH_ERRORS as e:
                    self.logger.info("Homepage fetch failed during discovery", site_url=site_url, error=str(e))
                    yield DoneEvent()
                    return
                all_urls = extract_links(BeautifulSoup(result.content, "lxml"), site_url)

            yield SitemapEvent(total_urls=len(all_urls))

            urls_by_section: dict[str, list[str]] = {}
            for url in all_urls:
                section = get_section(url, base_url)
                if section and section not in IGNORED_SECTIONS:
                    urls_by_section.setdefault(section, []).append(url)

            raw_sections = sorted(
                (SectionInfo(path=path, page_count=len(urls)) for path, urls in urls_by_section.items()),
                key=lambda s: s.page_count,
                reverse=True,
            )
            yield SectionsEvent(sections=raw_sections)

            for path, urls in urls_by_section.items():
                content_score = await self._score_section(fetcher, urls)
                if content_score >= self.settings.DISCOVERY_SCORE_THRESHOLD:
                    yield ScoredSectionEvent(
                        section=SectionInfo(path=path, page_count=len(urls), content_score=content_score)
                    )

        yield DoneEvent()

    async def _score_section(self, fetcher: PageFetcher, urls: list[str]) -> int:
        sample = self.rng.sample(urls, min(self.settings.DISCOVERY_SAMPLES_PER_SECTION, len(urls)))
        scores: list[int] = []
        for url in sample:
            try:
                result = await fetcher.fetch(url)
            except FETCH_ERRORS:
                continue
            scores.append(score_page_content(result.content))
        if not scores:
            return 0
        return self.round_half_up(sum(scores) / len(scores))
