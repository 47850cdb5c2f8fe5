"""URL discovery for a domain: sitemaps first, then homepage links."""

import gzip
import logging
import re
import xml.etree.ElementTree as ET
from urllib.parse import parse_qs, urlencode, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from sitescout.config import settings
from sitescout.services.streaming import ProgressStreamer

logger = logging.getLogger(__name__)

TRACKING_PARAMS = frozenset({
    # Analytics / ads
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "utm_id",
    "_ga", "_gl", "gclid", "dclid", "gbraid", "wbraid", "fbclid", "msclkid",
    "twclid", "li_fat_id", "yclid",
    # Marketing automation
    "_hsenc", "_hsmi", "mc_cid", "mc_eid", "mkt_tok",
    # Referral / session
    "ref", "referrer", "source", "trk", "icid",
    "sid", "sessionid", "jsessionid", "phpsessid",
})

# Auth, cart and admin pages carry no scrapeable company content
JUNK_PATH_SEGMENTS = frozenset({
    "/cart", "/checkout", "/login", "/signin", "/signup", "/register",
    "/account", "/my-account", "/wishlist", "/oauth", "/callback",
    "/api/", "/graphql", "/password", "/admin", "/wp-admin", "/wp-login",
})

_SKIPPED_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".zip",
    ".mp4", ".mp3", ".css", ".js", ".ico", ".xml",
)

SITEMAP_FALLBACK_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/wp-sitemap.xml")

_SITEMAP_NS = "{http://www.sitemaps.org/schemas/sitemap/0.9}"
_MAX_SITEMAP_DEPTH = 3
_SITEMAP_DIRECTIVE = re.compile(r"^sitemap\s*:\s*", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """Strip tracking params and plain #fragments; keep #/ hash routes."""
    parsed = urlparse(url)
    fragment = parsed.fragment if parsed.fragment.startswith(("/", "!/")) else ""
    query = ""
    if parsed.query:
        params = parse_qs(parsed.query, keep_blank_values=True)
        cleaned = {k: v for k, v in params.items() if k.lower() not in TRACKING_PARAMS}
        query = urlencode(cleaned, doseq=True)
    return parsed._replace(query=query, fragment=fragment).geturl()


def is_junk_url(url: str) -> bool:
    path = urlparse(url).path.lower()
    if path.endswith(_SKIPPED_EXTENSIONS):
        return True
    return any(seg in path for seg in JUNK_PATH_SEGMENTS)


def _bare_host(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def same_site(url: str, base_url: str) -> bool:
    return _bare_host(url) == _bare_host(base_url)


def extract_internal_links(html: str, base_url: str) -> list[str]:
    """Same-site http(s) links from a page, normalized, in document order."""
    soup = BeautifulSoup(html or "", "lxml")
    links: list[str] = []
    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        try:
            absolute = urljoin(base_url, href)
            if urlparse(absolute).scheme not in ("http", "https") or not same_site(absolute, base_url):
                continue
            links.append(normalize_url(absolute))
        except ValueError:
            logger.debug(f"Skipping malformed link: {href}")
    return links


def parse_sitemap(xml_text: str) -> tuple[list[str], list[str]]:
    """Return (page urls, nested sitemap urls) from a urlset or sitemapindex."""
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as e:
        logger.debug(f"Sitemap XML parse error: {e}")
        return [], []

    def _locs(parent_tag: str) -> list[str]:
        found = root.findall(f".//{_SITEMAP_NS}{parent_tag}/{_SITEMAP_NS}loc")
        if not found:
            # Some sites serve sitemaps without the xmlns declaration
            found = root.findall(f".//{parent_tag}/loc")
        return [el.text.strip() for el in found if el.text and el.text.strip()]

    return _locs("url"), _locs("sitemap")


class UrlDiscovery:
    """Finds up to max_pages same-site URLs for a domain.

    Sources in priority order: the homepage itself, URLs listed in sitemaps
    (robots.txt `Sitemap:` directives, else the usual fallback paths), then
    links on the homepage.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 15.0):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                timeout=self.timeout,
                headers={"User-Agent": settings.DEFAULT_USER_AGENT},
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, url: str) -> tuple[str, int]:
        try:
            response = await self._get_client().get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Discovery fetch failed for {url}: {e}")
            return "", 0
        if url.endswith(".gz") and response.status_code == 200:
            try:
                return gzip.decompress(response.content).decode("utf-8", errors="replace"), 200
            except (OSError, EOFError) as e:
                logger.debug(f"Failed to decompress gzipped sitemap {url}: {e}")
                return "", response.status_code
        return response.text, response.status_code

    async def sitemap_urls(self, base_url: str) -> list[str]:
        parsed = urlparse(base_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"

        sitemaps: list[str] = []
        robots, status = await self._fetch(f"{origin}/robots.txt")
        if status == 200:
            for line in robots.splitlines():
                line = line.strip()
                if _SITEMAP_DIRECTIVE.match(line):
                    target = _SITEMAP_DIRECTIVE.split(line, maxsplit=1)[-1].strip()
                    if target.startswith("http"):
                        sitemaps.append(target)
        if not sitemaps:
            sitemaps = [f"{origin}{p}" for p in SITEMAP_FALLBACK_PATHS]

        pages: list[str] = []
        visited: set[str] = set()

        async def _walk(url: str, depth: int) -> None:
            if url in visited or depth > _MAX_SITEMAP_DEPTH:
                return
            visited.add(url)
            text, code = await self._fetch(url)
            if code != 200 or not text or "<html" in text[:200].lower():
                return
            urls, nested = parse_sitemap(text)
            pages.extend(urls)
            for child in nested:
                await _walk(child, depth + 1)

        for sitemap in sitemaps:
            await _walk(sitemap, 0)
        logger.info(f"Sitemap discovery for {origin}: {len(pages)} URLs from {len(visited)} sitemap(s)")
        return pages

    async def discover(
        self,
        domain: str,
        max_pages: int | None = None,
        streamer: ProgressStreamer | None = None,
    ) -> list[str]:
        max_pages = max_pages or settings.MAX_PAGES
        found: list[str] = []
        seen: set[str] = set()

        def _add(url: str) -> bool:
            """Record url; returns False once the page budget is spent."""
            if len(found) >= max_pages:
                return False
            try:
                url = normalize_url(url)
                if not same_site(url, domain) or is_junk_url(url):
                    return True
            except ValueError:
                logger.debug(f"Skipping malformed URL: {url}")
                return True
            key = url.rstrip("/")
            if key in seen:
                return True
            seen.add(key)
            found.append(url)
            if streamer is not None:
                streamer.url_discovered(url, len(found))
            return len(found) < max_pages

        _add(domain)
        if max_pages > 1:
            for url in await self.sitemap_urls(domain):
                if not _add(url):
                    break
        if len(found) < max_pages:
            html, status = await self._fetch(domain)
            if status and html:
                for url in extract_internal_links(html, domain):
                    if not _add(url):
                        break
            else:
                logger.warning(f"Homepage fetch for {domain} failed (status={status})")

        logger.info(f"Discovered {len(found)} URL(s) for {domain}")
        return found
