"""Page metadata extraction: meta tags, Open Graph, Twitter Cards, Dublin
Core, JSON-LD and microdata."""

import json
import logging

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

BASIC_META_NAMES = {
    "description": "description",
    "keywords": "keywords",
    "author": "author",
    "generator": "generator",
    "robots": "robots",
    "viewport": "viewport",
}
OPEN_GRAPH_FIELDS = {
    "og:title": "title",
    "og:description": "description",
    "og:type": "type",
    "og:url": "url",
    "og:image": "image",
    "og:site_name": "site_name",
    "og:locale": "locale",
    "og:video": "video",
    "og:audio": "audio",
}
TWITTER_FIELDS = {
    "twitter:card": "card",
    "twitter:site": "site",
    "twitter:creator": "creator",
    "twitter:title": "title",
    "twitter:description": "description",
    "twitter:image": "image",
    "twitter:image:alt": "image_alt",
}
DUBLIN_CORE_FIELDS = (
    "title", "creator", "subject", "description", "publisher", "contributor",
    "date", "type", "format", "identifier", "source", "language", "relation",
    "coverage", "rights",
)
_STANDARD_PREFIXES = ("og:", "twitter:", "dc.", "dcterms.", "article:", "fb:")
_STANDARD_NAMES = frozenset(BASIC_META_NAMES) | {"charset", "http-equiv", "theme-color"}


def _meta_map(soup: BeautifulSoup) -> dict[str, str]:
    """name/property (lowercased) -> content, first occurrence wins."""
    metas: dict[str, str] = {}
    for tag in soup.find_all("meta"):
        key = tag.get("name") or tag.get("property")
        content = tag.get("content")
        if not key or content is None:
            continue
        metas.setdefault(key.strip().lower(), content.strip())
    return metas


def _extract_basic(soup: BeautifulSoup, metas: dict[str, str]) -> dict:
    basic: dict = {}
    if soup.title and soup.title.string:
        basic["title"] = soup.title.string.strip()
    for name, field in BASIC_META_NAMES.items():
        if metas.get(name):
            basic[field] = metas[name]
    if "keywords" in basic:
        basic["keywords"] = [k.strip() for k in basic["keywords"].split(",") if k.strip()]

    canonical = soup.find("link", rel="canonical")
    if canonical and canonical.get("href"):
        basic["canonical"] = canonical["href"]
    html_tag = soup.find("html")
    if html_tag and html_tag.get("lang"):
        basic["language"] = html_tag["lang"]
    charset_tag = soup.find("meta", charset=True)
    if charset_tag:
        basic["charset"] = charset_tag["charset"]
    return basic


def _extract_prefixed(metas: dict[str, str], fields: dict[str, str]) -> dict:
    return {field: metas[key] for key, field in fields.items() if metas.get(key)}


def _extract_dublin_core(metas: dict[str, str]) -> dict:
    dc = {}
    for field in DUBLIN_CORE_FIELDS:
        value = metas.get(f"dc.{field}") or metas.get(f"dcterms.{field}")
        if value:
            dc[field] = value
    return dc


def extract_json_ld(soup: BeautifulSoup) -> list:
    """Parse every ld+json block; unparseable blocks are skipped."""
    blocks = []
    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.debug(f"Skipping malformed JSON-LD block: {e}")
            continue
        if isinstance(data, list):
            blocks.extend(data)
        else:
            blocks.append(data)
    return blocks


def _short_type(item_type: str) -> str:
    """'https://schema.org/Product' -> 'Product'."""
    parts = (item_type or "").split()
    item_type = parts[0] if parts else ""
    return item_type.rstrip("/").rsplit("/", 1)[-1]


def _microdata_value(el: Tag):
    if el.get("itemscope") is not None:
        return parse_microdata_item(el)
    for attr in ("content", "href", "src", "datetime"):
        if el.get(attr):
            return el[attr]
    return el.get_text(" ", strip=True)


def parse_microdata_item(el: Tag) -> dict:
    """Parse one itemscope element into {type, properties}."""
    properties: dict = {}
    for child in el.find_all(attrs={"itemprop": True}):
        # Skip properties owned by a nested itemscope
        owner = child.parent
        nested = False
        while owner is not None and owner is not el:
            if isinstance(owner, Tag) and owner.get("itemscope") is not None:
                nested = True
                break
            owner = owner.parent
        if nested:
            continue

        value = _microdata_value(child)
        for prop in child["itemprop"].split():
            if prop in properties:
                existing = properties[prop]
                if isinstance(existing, list):
                    existing.append(value)
                else:
                    properties[prop] = [existing, value]
            else:
                properties[prop] = value

    return {"type": _short_type(el.get("itemtype", "")), "properties": properties}


def extract_microdata(soup: BeautifulSoup) -> list[dict]:
    """Top-level microdata items (those not themselves an itemprop value)."""
    return [
        parse_microdata_item(el)
        for el in soup.find_all(attrs={"itemscope": True})
        if el.get("itemprop") is None
    ]


def _extract_custom(metas: dict[str, str]) -> dict:
    return {
        key: value
        for key, value in metas.items()
        if key not in _STANDARD_NAMES and not key.startswith(_STANDARD_PREFIXES)
    }


def extract_metadata(html: str | BeautifulSoup) -> dict:
    soup = BeautifulSoup(html or "", "lxml") if isinstance(html, str) else html
    metas = _meta_map(soup)
    return {
        "basic": _extract_basic(soup, metas),
        "open_graph": _extract_prefixed(metas, OPEN_GRAPH_FIELDS),
        "twitter": _extract_prefixed(metas, TWITTER_FIELDS),
        "dublin_core": _extract_dublin_core(metas),
        "json_ld": extract_json_ld(soup),
        "microdata": extract_microdata(soup),
        "custom": _extract_custom(metas),
    }
