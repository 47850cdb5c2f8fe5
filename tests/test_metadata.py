"""Tests for page metadata extraction (meta tags, JSON-LD, microdata)."""

from sitescout.services.metadata import extract_metadata

HTML = """
<html lang="en">
<head>
  <meta charset="utf-8">
  <title> Acme Widgets </title>
  <meta name="description" content="Widgets for everyone">
  <meta name="keywords" content="widgets, gadgets, ,tools">
  <meta name="author" content="Acme">
  <meta property="og:title" content="Acme OG">
  <meta property="og:image" content="https://acme.test/og.png">
  <meta name="twitter:card" content="summary">
  <meta name="twitter:site" content="@acme">
  <meta name="DC.creator" content="Acme Editorial">
  <meta name="x-build" content="abc123">
  <link rel="canonical" href="https://acme.test/">
  <script type="application/ld+json">{"@type": "Organization", "name": "Acme"}</script>
  <script type="application/ld+json">[{"@type": "WebSite"}, {"@type": "WebPage"}]</script>
  <script type="application/ld+json">{not json</script>
</head>
<body>
  <div itemscope itemtype="https://schema.org/Product">
    <span itemprop="name">Widget</span>
    <span itemprop="sku" content="W-1">SKU W-1</span>
    <div itemprop="offers" itemscope itemtype="https://schema.org/Offer">
      <span itemprop="price">9.99</span>
    </div>
  </div>
</body>
</html>
"""


class TestExtractMetadata:
    def test_basic(self):
        basic = extract_metadata(HTML)["basic"]
        assert basic["title"] == "Acme Widgets"
        assert basic["description"] == "Widgets for everyone"
        assert basic["keywords"] == ["widgets", "gadgets", "tools"]
        assert basic["canonical"] == "https://acme.test/"
        assert basic["language"] == "en"
        assert basic["charset"] == "utf-8"

    def test_open_graph_and_twitter(self):
        meta = extract_metadata(HTML)
        assert meta["open_graph"] == {"title": "Acme OG", "image": "https://acme.test/og.png"}
        assert meta["twitter"] == {"card": "summary", "site": "@acme"}

    def test_dublin_core_case_insensitive(self):
        assert extract_metadata(HTML)["dublin_core"] == {"creator": "Acme Editorial"}

    def test_json_ld_lists_flattened_and_bad_blocks_skipped(self):
        types = [block["@type"] for block in extract_metadata(HTML)["json_ld"]]
        assert types == ["Organization", "WebSite", "WebPage"]

    def test_microdata_nested_items(self):
        items = extract_metadata(HTML)["microdata"]
        assert len(items) == 1
        product = items[0]
        assert product["type"] == "Product"
        assert product["properties"]["name"] == "Widget"
        assert product["properties"]["sku"] == "W-1"
        assert product["properties"]["offers"] == {
            "type": "Offer",
            "properties": {"price": "9.99"},
        }

    def test_microdata_blank_itemtype(self):
        html = '<div itemscope itemtype=" "><span itemprop="name">A</span></div>'
        items = extract_metadata(html)["microdata"]
        assert items == [{"type": "", "properties": {"name": "A"}}]

    def test_custom_meta(self):
        assert extract_metadata(HTML)["custom"] == {"x-build": "abc123"}

    def test_empty_document(self):
        meta = extract_metadata("")
        assert meta["json_ld"] == []
        assert meta["microdata"] == []
        assert meta["open_graph"] == {}
