"""Framework / technology detection from raw HTML and response headers.

Each framework has a list of weighted indicators. Matched weights are summed
and normalized (score / 10, clamped to 1.0) into a confidence. The weights are
a starting calibration; both the table and the divisor can be overridden.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bs4 import BeautifulSoup

from sitescout.config import settings
from sitescout.schemas.detection import WebsiteAnalysis, WebsiteSignature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Indicator:
    kind: str  # selector, header, meta, path, script
    pattern: str
    weight: float
    value: str | None = None  # header/meta value substring


def _sel(pattern: str, weight: float) -> Indicator:
    return Indicator("selector", pattern, weight)


def _header(name: str, value: str, weight: float) -> Indicator:
    return Indicator("header", name, weight, value)


def _meta(name: str, weight: float, value: str | None = None) -> Indicator:
    return Indicator("meta", name, weight, value)


def _path(pattern: str, weight: float) -> Indicator:
    return Indicator("path", pattern, weight)


def _script(pattern: str, weight: float) -> Indicator:
    return Indicator("script", pattern, weight)


# Declaration order doubles as the tie-break order for equal confidences.
FRAMEWORK_SIGNATURES: dict[str, list[Indicator]] = {
    "nextjs": [
        _sel('script[src*="/_next"]', 10),
        _sel("#__next", 8),
        _header("x-powered-by", "Next.js", 10),
        _meta("next-head-count", 10),
        _script("__NEXT_DATA__", 10),
        _path("/_next/static/", 8),
    ],
    "wordpress": [
        _sel('meta[name="generator"][content*="WordPress"]', 10),
        _sel('link[rel="https://api.w.org/"]', 8),
        _path("/wp-content/", 6),
        _path("/wp-includes/", 6),
        _path("/wp-admin/", 6),
        _script("wp-emoji", 4),
    ],
    "webflow": [
        _sel(".w-webflow-badge", 8),
        _meta("generator", 10, "Webflow"),
        _script("webflow.js", 8),
        _sel("[data-wf-page]", 6),
        _script("Webflow", 6),
    ],
    "react": [
        _sel("#root", 5),
        _sel("[data-reactroot]", 8),
        _script("react", 6),
        _script("React", 6),
        _script("_react", 4),
    ],
    "vue": [
        _sel("#app", 5),
        _script("data-v-", 8),
        _script("vue", 6),
        _script("Vue", 6),
        _meta("generator", 8, "Vue"),
    ],
    "angular": [
        _sel("[ng-app]", 8),
        _sel("[ng-version]", 10),
        _sel("app-root", 6),
        _script("angular", 6),
        _script("Angular", 6),
    ],
    "shopify": [
        _meta("shopify-digital-wallet", 10),
        _sel(".shopify-section", 8),
        _script("cdn.shopify.com", 8),
        _path("/cdn/shop/", 6),
        _script("Shopify", 6),
    ],
    "wix": [
        _meta("generator", 10, "Wix.com"),
        _sel("[data-wix-comp]", 8),
        _script("static.wixstatic.com", 8),
        _sel("#SITE_CONTAINER", 6),
    ],
    "squarespace": [
        _sel(".sqs-block", 6),
        _script("static.squarespace.com", 8),
        _meta("generator", 10, "Squarespace"),
        _sel("#siteWrapper", 6),
    ],
    "gatsby": [
        _sel("#___gatsby", 10),
        _meta("generator", 10, "Gatsby"),
        _script("gatsby", 6),
        _path("/static/", 4),
    ],
    "nuxt": [
        _sel("#__nuxt", 10),
        _meta("generator", 10, "Nuxt"),
        _script("__NUXT__", 8),
        _path("/_nuxt/", 8),
    ],
    "jekyll": [
        _meta("generator", 10, "Jekyll"),
        _sel(".jekyll", 4),
        _path("/assets/", 2),
    ],
    "drupal": [
        _meta("generator", 10, "Drupal"),
        _header("x-generator", "Drupal", 10),
        _path("/sites/default/", 6),
        _script("Drupal", 6),
    ],
    "joomla": [
        _meta("generator", 10, "Joomla"),
        _path("/components/com_", 6),
        _path("/modules/mod_", 6),
        _script("Joomla", 6),
    ],
    "magento": [
        _script("Mage", 8),
        _path("/skin/frontend/", 6),
        _path("/media/catalog/", 6),
        _sel(".magento", 4),
    ],
}

SPA_FRAMEWORKS = frozenset({"react", "vue", "angular", "nextjs"})
JS_FRAMEWORKS = frozenset({"react", "vue", "angular", "nextjs", "gatsby", "nuxt"})
# Sites that need the full stealth browser path when confidently matched.
HEAVY_SPA_FRAMEWORKS = frozenset({"angular", "wix"})

_INFINITE_SCROLL_MARKERS = ("IntersectionObserver", "infinite", "loadMore")

FRAMEWORK_SELECTORS: dict[str, dict[str, list[str]]] = {
    "wordpress": {
        "content": [".entry-content", ".post-content", "article", ".site-main"],
        "navigation": [".main-navigation", "#site-navigation", ".menu"],
        "title": [".entry-title", ".page-title"],
    },
    "shopify": {
        "content": [".product-single", ".collection", "main"],
        "navigation": [".site-nav", ".header__menu"],
        "title": [".product-single__title", "h1.title"],
    },
    "nextjs": {
        "content": ["#__next main", "#__next"],
        "navigation": ["nav", "header nav"],
        "title": ["h1"],
    },
    "webflow": {
        "content": [".w-container", ".w-richtext", "main"],
        "navigation": [".w-nav", ".w-nav-menu"],
        "title": ["h1"],
    },
}


def framework_selectors(framework: str) -> dict[str, list[str]]:
    """Return known content/navigation/title selectors for a framework."""
    return FRAMEWORK_SELECTORS.get(framework, {})


class WebsiteDetector:
    """Scores frameworks from HTML and headers. Never raises."""

    def __init__(
        self,
        signatures: dict[str, list[Indicator]] | None = None,
        normalization: float | None = None,
        heavy_spa_threshold: float | None = None,
    ):
        self._signatures = signatures if signatures is not None else FRAMEWORK_SIGNATURES
        self._normalization = normalization or settings.DETECTOR_NORMALIZATION
        self._heavy_threshold = (
            heavy_spa_threshold
            if heavy_spa_threshold is not None
            else settings.HEAVY_SPA_THRESHOLD
        )

    def detect(
        self, html: str, headers: dict[str, str] | None = None
    ) -> list[WebsiteSignature]:
        html = html or ""
        lowered_headers = {k.lower(): v for k, v in (headers or {}).items()}
        try:
            soup = BeautifulSoup(html, "lxml")
        except Exception as e:
            logger.warning(f"Detector could not parse HTML: {e}")
            return []

        meta_index = self._index_meta(soup)
        signatures = []
        for framework, indicators in self._signatures.items():
            score = 0.0
            matched: list[str] = []
            for ind in indicators:
                if self._matches(ind, soup, html, lowered_headers, meta_index):
                    score += ind.weight
                    matched.append(self._describe(ind))
            if score > 0:
                signatures.append(
                    WebsiteSignature(
                        framework=framework,
                        confidence=min(score / self._normalization, 1.0),
                        indicators=matched,
                    )
                )

        # sorted() is stable, so equal scores keep declaration order
        return sorted(signatures, key=lambda s: s.confidence, reverse=True)

    def analyze(
        self, url: str, html: str, headers: dict[str, str] | None = None
    ) -> WebsiteAnalysis:
        signatures = self.detect(html, headers)
        html = html or ""
        try:
            soup = BeautifulSoup(html, "lxml")
            has_spa_root = bool(
                soup.select_one("#root, [data-reactroot], #app, [ng-version], [ng-app], #__next")
            )
            has_forms = soup.find("form") is not None
        except Exception as e:
            logger.warning(f"Detector analysis parse failed for {url}: {e}")
            has_spa_root = False
            has_forms = False

        found = {s.framework for s in signatures}
        is_static = not (has_spa_root or found & SPA_FRAMEWORKS)
        top = signatures[0] if signatures else None
        requires_js = not is_static or (top is not None and top.framework in JS_FRAMEWORKS)
        has_infinite_scroll = any(marker in html for marker in _INFINITE_SCROLL_MARKERS)

        if top is None:
            # Static fetch can silently under-deliver on JS sites
            scraper = "browser"
        elif top.framework in HEAVY_SPA_FRAMEWORKS and top.confidence > self._heavy_threshold:
            scraper = "browser_stealth"
        elif requires_js or has_infinite_scroll:
            scraper = "browser"
        else:
            scraper = "http"

        if scraper == "http":
            strategy = "static"
        elif top is not None and top.framework in SPA_FRAMEWORKS | HEAVY_SPA_FRAMEWORKS:
            strategy = "spa"
        else:
            strategy = "dynamic"

        analysis = WebsiteAnalysis(
            url=url,
            signatures=signatures,
            is_static=is_static,
            requires_javascript=requires_js,
            has_forms=has_forms,
            has_infinite_scroll=has_infinite_scroll,
            recommended_scraper=scraper,
            recommended_strategy=strategy,
        )
        logger.info(
            f"Detected {top.framework if top else 'no framework'} for {url} "
            f"(scraper={scraper}, strategy={strategy})"
        )
        return analysis

    @staticmethod
    def _index_meta(soup: BeautifulSoup) -> dict[str, list[str]]:
        index: dict[str, list[str]] = {}
        for tag in soup.find_all("meta"):
            key = tag.get("name") or tag.get("property")
            if key:
                index.setdefault(key.lower(), []).append(tag.get("content", ""))
        return index

    @staticmethod
    def _matches(
        ind: Indicator,
        soup: BeautifulSoup,
        html: str,
        headers: dict[str, str],
        meta_index: dict[str, list[str]],
    ) -> bool:
        if ind.kind == "selector":
            try:
                return soup.select_one(ind.pattern) is not None
            except Exception:
                logger.debug(f"Invalid detector selector: {ind.pattern}")
                return False
        if ind.kind == "header":
            value = headers.get(ind.pattern.lower())
            return value is not None and (ind.value or "").lower() in value.lower()
        if ind.kind == "meta":
            contents = meta_index.get(ind.pattern.lower())
            if contents is None:
                return False
            if ind.value is None:
                return True
            return any(ind.value.lower() in c.lower() for c in contents)
        # path / script: raw substring of the document
        return ind.pattern in html

    @staticmethod
    def _describe(ind: Indicator) -> str:
        if ind.value:
            return f"{ind.kind}:{ind.pattern}={ind.value}"
        return f"{ind.kind}:{ind.pattern}"
