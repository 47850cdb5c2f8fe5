"""Social media profile discovery.

Scans anchors and a few author meta tags for known platform URLs, rejects
share/intent/widget links, and pulls a best-effort username out of the path.
Links found inside <header>/<nav> or <footer> are tagged with that location.
"""

import logging
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# platform -> (positive patterns, negative path fragments)
PLATFORM_PATTERNS: dict[str, tuple[list[re.Pattern], list[str]]] = {
    "facebook": (
        [
            re.compile(r"(?:^|\.)facebook\.com/(?!sharer|share|dialog)", re.I),
            re.compile(r"(?:^|\.)fb\.com/", re.I),
        ],
        ["/sharer", "/share", "/dialog/", "/plugins/", "/developers/", "/help/", "/policies/"],
    ),
    "twitter": (
        [re.compile(r"(?:^|\.)(?:twitter|x)\.com/(?!intent|share|widgets)", re.I)],
        ["/intent/", "/share", "/widgets/", "/embed/", "/hashtag/", "/search"],
    ),
    "linkedin": (
        [re.compile(r"(?:^|\.)linkedin\.com/(?:company|in|school)/", re.I)],
        ["/sharing/", "/shareArticle", "/share"],
    ),
    "instagram": (
        [re.compile(r"(?:^|\.)instagram\.com/(?!p/|reel/|tv/)", re.I)],
        ["/p/", "/reel/", "/tv/", "/explore/"],
    ),
    "youtube": (
        [
            re.compile(r"(?:^|\.)youtube\.com/(?:c/|channel/|user/|@)", re.I),
            re.compile(r"(?:^|\.)youtube\.com/(?!watch|embed|playlist|results)[\w-]+/?$", re.I),
        ],
        ["/watch", "/embed/", "/playlist", "/results"],
    ),
    "tiktok": (
        [re.compile(r"(?:^|\.)tiktok\.com/@", re.I)],
        ["/video/", "/embed/"],
    ),
    "pinterest": (
        [re.compile(r"(?:^|\.)pinterest\.[a-z.]+/(?!pin/|pins/)", re.I)],
        ["/pin/", "/pins/"],
    ),
    "github": (
        [re.compile(r"(?:^|\.)github\.com/[\w-]+/?$", re.I)],
        ["/sponsors/", "/features", "/about", "/pricing", "/login"],
    ),
}

HEADER_SELECTORS = ["header", '[role="banner"]', ".header", "#header", ".site-header", "nav"]
FOOTER_SELECTORS = ["footer", '[role="contentinfo"]', ".footer", "#footer", ".site-footer"]
SOCIAL_META_NAMES = ("twitter:creator", "article:author", "twitter:site")

_FACEBOOK_NON_PROFILE = frozenset({"pages", "groups", "events", "watch", "profile.php"})


def _host_and_path(url: str) -> str:
    parsed = urlparse(url)
    return f"{(parsed.hostname or '').lower()}{parsed.path}"


def detect_platform(url: str) -> str | None:
    """Return the platform a profile URL belongs to, or None."""
    target = _host_and_path(url)
    for platform, (positives, negatives) in PLATFORM_PATTERNS.items():
        if not any(p.search(target) for p in positives):
            continue
        path = urlparse(url).path
        if any(neg.lower() in path.lower() for neg in negatives):
            return None
        return platform
    return None


def validate_profile_url(url: str, platform: str) -> bool:
    """True when url is a real profile link for the given platform."""
    if platform not in PLATFORM_PATTERNS:
        return False
    return detect_platform(url) == platform


def extract_username(url: str, platform: str) -> str | None:
    segments = [s for s in urlparse(url).path.split("/") if s]
    if not segments:
        return None

    if platform in ("twitter", "instagram", "github", "pinterest"):
        return segments[0].lstrip("@") if len(segments) == 1 else None
    if platform == "facebook":
        if len(segments) == 1 and segments[0].lower() not in _FACEBOOK_NON_PROFILE:
            return segments[0]
        return None
    if platform == "linkedin":
        return segments[1] if len(segments) >= 2 else None
    if platform == "youtube":
        if segments[0].startswith("@"):
            return segments[0][1:]
        if segments[0] in ("c", "channel", "user") and len(segments) >= 2:
            return segments[1]
        return segments[0] if len(segments) == 1 else None
    if platform == "tiktok":
        return segments[0][1:] if segments[0].startswith("@") else None
    return None


def normalize_profile_url(url: str) -> str:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if host.startswith("m."):
        host = host[2:]
    path = parsed.path.rstrip("/")
    return f"https://{host}{path}"


class SocialMediaExtractor:
    """Collects social accounts from one document."""

    def __init__(self, base_url: str = ""):
        self.base_url = base_url
        self._accounts: dict[tuple[str, str], dict] = {}

    def _add(self, href: str, location: str) -> None:
        href = (href or "").strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            return
        try:
            url = urljoin(self.base_url, href) if self.base_url else href
            if not url.startswith(("http://", "https://")):
                return
            platform = detect_platform(url)
            if platform is None:
                return
            normalized = normalize_profile_url(url)
        except ValueError:
            logger.debug(f"Skipping malformed social link: {href}")
            return
        key = (platform, normalized.lower())
        existing = self._accounts.get(key)
        if existing is not None:
            # Header/footer placement outranks a plain body hit
            if existing["location"] == "body" and location in ("header", "footer"):
                existing["location"] = location
            return
        self._accounts[key] = {
            "platform": platform,
            "url": normalized,
            "username": extract_username(normalized, platform),
            "location": location,
        }

    def _scan_region(self, soup: BeautifulSoup, selectors: list[str], location: str) -> None:
        for selector in selectors:
            region = soup.select_one(selector)
            if region is None:
                continue
            for a_tag in region.find_all("a", href=True):
                self._add(a_tag["href"], location)
            break

    def extract(self, html: str | BeautifulSoup) -> list[dict]:
        soup = BeautifulSoup(html or "", "lxml") if isinstance(html, str) else html

        for a_tag in soup.find_all("a", href=True):
            self._add(a_tag["href"], "body")

        for name in SOCIAL_META_NAMES:
            tag = soup.find("meta", attrs={"name": name}) or soup.find(
                "meta", attrs={"property": name}
            )
            content = (tag.get("content") or "").strip() if tag else ""
            if content.startswith("http"):
                self._add(content, "meta")

        self._scan_region(soup, HEADER_SELECTORS, "header")
        self._scan_region(soup, FOOTER_SELECTORS, "footer")

        return list(self._accounts.values())


def extract_social_accounts(html: str | BeautifulSoup, base_url: str = "") -> list[dict]:
    return SocialMediaExtractor(base_url).extract(html)
