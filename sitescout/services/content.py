"""Structured content extraction from HTML.

All functions take raw HTML (or an already-parsed soup) and never touch the
network. Browser strategies feed them `page.content()` after rendering.
"""

import logging
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag
from markdownify import MarkdownConverter

from sitescout.services.table_extraction import extract_tables

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------

# Checked in order; the first container with enough text wins.
MAIN_CONTENT_SELECTORS = [
    "main",
    "article",
    '[role="main"]',
    "#content",
    ".content",
    "#main",
    ".main",
]
MIN_MAIN_CONTENT_CHARS = 100
MIN_PARAGRAPH_CHARS = 20

NON_CONTENT_TAGS = ["script", "style", "noscript", "template"]

_SKIP_HREF_PREFIXES = ("mailto:", "tel:", "javascript:", "data:")
_WHITESPACE_RE = re.compile(r"\s+")


def _squash(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def parse_html(html: str) -> BeautifulSoup:
    """Parse HTML and drop script/style/noscript nodes."""
    soup = BeautifulSoup(html or "", "lxml")
    for tag in soup.find_all(NON_CONTENT_TAGS):
        tag.decompose()
    return soup


def _meta_content(soup: BeautifulSoup, *, name: str | None = None, prop: str | None = None) -> str:
    attrs = {"name": name} if name else {"property": prop}
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return ""


# ---------------------------------------------------------------------------
# Field extractors
# ---------------------------------------------------------------------------


def extract_title(soup: BeautifulSoup) -> str:
    """First of: <title>, og:title, twitter:title, first <h1>."""
    if soup.title and soup.title.get_text(strip=True):
        return soup.title.get_text(strip=True)
    title = _meta_content(soup, prop="og:title") or _meta_content(soup, name="twitter:title")
    if title:
        return title
    h1 = soup.find("h1")
    return h1.get_text(" ", strip=True) if h1 else ""


def extract_description(soup: BeautifulSoup) -> str:
    return (
        _meta_content(soup, name="description")
        or _meta_content(soup, prop="og:description")
        or _meta_content(soup, name="twitter:description")
    )


def extract_headings(soup: BeautifulSoup) -> dict[str, list[str]]:
    headings: dict[str, list[str]] = {"h1": [], "h2": [], "h3": []}
    for level in headings:
        for tag in soup.find_all(level):
            text = tag.get_text(" ", strip=True)
            if text:
                headings[level].append(text)
    return headings


def extract_main_content(soup: BeautifulSoup, max_length: int = 50000) -> str:
    """Text of the first priority container holding more than 100 chars.

    Falls back to the whole body text truncated to max_length.
    """
    for selector in MAIN_CONTENT_SELECTORS:
        for candidate in soup.select(selector):
            text = _squash(candidate.get_text(" "))
            if len(text) > MIN_MAIN_CONTENT_CHARS:
                return text[:max_length]
    body = soup.body or soup
    return _squash(body.get_text(" "))[:max_length]


def extract_paragraphs(soup: BeautifulSoup) -> list[str]:
    paragraphs = []
    for p in soup.find_all("p"):
        text = _squash(p.get_text(" "))
        if len(text) > MIN_PARAGRAPH_CHARS:
            paragraphs.append(text)
    return paragraphs


def extract_images(soup: BeautifulSoup, base_url: str) -> list[dict]:
    images = []
    seen: set[str] = set()
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src") or ""
        src = src.strip()
        if not src or src.startswith("data:"):
            continue
        try:
            absolute = urljoin(base_url, src)
        except ValueError:
            logger.debug(f"Skipping malformed image src: {src}")
            continue
        if absolute in seen:
            continue
        seen.add(absolute)
        images.append({
            "src": absolute,
            "alt": img.get("alt", ""),
            "title": img.get("title", ""),
        })
    return images


def extract_links(soup: BeautifulSoup, base_url: str) -> list[dict]:
    """Absolute, deduplicated links flagged internal/external by hostname."""
    base_host = (urlparse(base_url).hostname or "").lower()
    links = []
    seen: set[str] = set()

    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if not href or href == "#" or href.startswith(_SKIP_HREF_PREFIXES):
            continue
        try:
            absolute = urljoin(base_url, href)
            parsed = urlparse(absolute)
            host = (parsed.hostname or "").lower()
        except ValueError:
            logger.debug(f"Skipping malformed link: {href}")
            continue
        if parsed.scheme not in ("http", "https"):
            continue
        clean = parsed._replace(fragment="").geturl()
        if clean in seen:
            continue
        seen.add(clean)
        links.append({
            "url": clean,
            "text": a_tag.get_text(" ", strip=True),
            "is_external": bool(host) and host != base_host,
        })
    return links


def extract_lists(soup: BeautifulSoup) -> list[dict]:
    lists = []
    for lst in soup.find_all(["ul", "ol"]):
        items = [
            _squash(li.get_text(" "))
            for li in lst.find_all("li", recursive=False)
        ]
        items = [i for i in items if i]
        if items:
            lists.append({
                "type": "ordered" if lst.name == "ol" else "unordered",
                "items": items,
            })
    return lists


def extract_content(
    html: str,
    base_url: str = "",
    max_text_length: int = 50000,
    include_images: bool = True,
    include_links: bool = True,
    include_tables: bool = True,
) -> dict:
    """Extract the full structured content record from a page."""
    soup = parse_html(html)
    content = {
        "title": extract_title(soup),
        "description": extract_description(soup),
        "headings": extract_headings(soup),
        "main_content": extract_main_content(soup, max_text_length),
        "paragraphs": extract_paragraphs(soup),
        "images": extract_images(soup, base_url) if include_images else [],
        "links": extract_links(soup, base_url) if include_links else [],
        "lists": extract_lists(soup),
        "tables": extract_tables(soup) if include_tables else [],
    }
    return content


# ---------------------------------------------------------------------------
# Markdown output
# ---------------------------------------------------------------------------


class SiteScoutConverter(MarkdownConverter):
    """Markdown converter that keeps links, images and code language hints."""

    def convert_a(self, el, text, *args, **kwargs):
        href = el.get("href", "")
        text = (text or "").strip()
        if not text or not href or href == "#":
            return text or ""
        return f"[{text}]({href})"

    def convert_img(self, el, text, *args, **kwargs):
        src = el.get("src", "")
        if not src:
            return ""
        return f"![{el.get('alt', '')}]({src})"

    def convert_pre(self, el, text, *args, **kwargs):
        code = el.find("code")
        lang = ""
        if code:
            for cls in code.get("class", []):
                if cls.startswith("language-"):
                    lang = cls[9:]
                    break
            text = code.get_text()
        else:
            text = el.get_text()
        return f"\n```{lang}\n{text}\n```\n"


_CONVERTER = SiteScoutConverter(
    heading_style="ATX",
    bullets="-",
    strip=["script", "style"],
)
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def html_to_markdown(html: str | Tag) -> str:
    """Convert HTML (or a parsed tag) to Markdown."""
    if isinstance(html, Tag):
        markdown = _CONVERTER.convert_soup(html)
    else:
        markdown = _CONVERTER.convert(html or "")
    return _BLANK_LINES_RE.sub("\n\n", markdown).strip()
