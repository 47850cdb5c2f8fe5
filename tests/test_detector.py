"""Tests for framework detection and the strategy recommendation it feeds."""

from sitescout.services.detector import Indicator, WebsiteDetector, framework_selectors


NEXTJS_HTML = """
<html><head><title>Shop</title></head>
<body>
  <div id="__next"><main><h1>Hello</h1></main></div>
  <script id="__NEXT_DATA__" type="application/json">{"props": {}}</script>
  <script src="/_next/static/chunks/main.js"></script>
</body></html>
"""

WORDPRESS_HTML = """
<html><head>
  <meta name="generator" content="WordPress 6.5">
  <link rel="stylesheet" href="/wp-content/themes/x/style.css">
</head>
<body><article class="entry-content"><p>Plain server-rendered blog post.</p></article></body>
</html>
"""

PLAIN_HTML = "<html><head><title>Hi</title></head><body><p>Nothing special here.</p></body></html>"


class TestWebsiteDetector:
    def test_confidence_is_clamped_to_one(self):
        # #__next (8) + __NEXT_DATA__ (10) + script src (10) + path (8) well past the divisor
        signatures = WebsiteDetector().detect(NEXTJS_HTML)
        assert signatures[0].framework == "nextjs"
        assert signatures[0].confidence == 1.0

    def test_custom_weights_and_divisor(self):
        detector = WebsiteDetector(
            signatures={"custom": [Indicator("selector", "#one", 6), Indicator("selector", "#two", 5)]},
            normalization=10,
        )
        signatures = detector.detect('<div id="one"></div><div id="two"></div>')
        assert len(signatures) == 1
        assert signatures[0].confidence == 1.0

        partial = detector.detect('<div id="one"></div>')
        assert partial[0].confidence == 0.6

    def test_header_indicator(self):
        signatures = WebsiteDetector().detect("<html></html>", {"X-Powered-By": "Next.js 14"})
        assert [s.framework for s in signatures] == ["nextjs"]
        assert "header:x-powered-by=Next.js" in signatures[0].indicators

    def test_empty_and_malformed_input(self):
        detector = WebsiteDetector()
        assert detector.detect("") == []
        assert detector.detect(None) == []
        assert detector.detect("<<<not really html") == []

    def test_results_sorted_by_confidence(self):
        signatures = WebsiteDetector().detect(WORDPRESS_HTML + NEXTJS_HTML)
        confidences = [s.confidence for s in signatures]
        assert confidences == sorted(confidences, reverse=True)


class TestAnalyze:
    def test_nextjs_recommends_spa_browser(self):
        analysis = WebsiteDetector().analyze("https://shop.test", NEXTJS_HTML)
        assert analysis.top.framework == "nextjs"
        assert analysis.is_static is False
        assert analysis.requires_javascript is True
        assert analysis.recommended_scraper == "browser"
        assert analysis.recommended_strategy == "spa"

    def test_wordpress_recommends_static_http(self):
        analysis = WebsiteDetector().analyze("https://blog.test", WORDPRESS_HTML)
        assert analysis.top.framework == "wordpress"
        assert analysis.is_static is True
        assert analysis.recommended_scraper == "http"
        assert analysis.recommended_strategy == "static"

    def test_unknown_site_defaults_to_browser(self):
        analysis = WebsiteDetector().analyze("https://plain.test", PLAIN_HTML)
        assert analysis.signatures == []
        assert analysis.recommended_scraper == "browser"
        assert analysis.recommended_strategy == "dynamic"

    def test_heavy_spa_needs_stealth(self):
        html = '<html><body><app-root ng-version="17.0.0"></app-root><script>angular</script></body></html>'
        analysis = WebsiteDetector().analyze("https://app.test", html)
        assert analysis.top.framework == "angular"
        assert analysis.recommended_scraper == "browser_stealth"
        assert analysis.recommended_strategy == "spa"

    def test_forms_and_infinite_scroll(self):
        html = "<html><body><form></form><script>new IntersectionObserver(cb)</script></body></html>"
        analysis = WebsiteDetector().analyze("https://x.test", html)
        assert analysis.has_forms is True
        assert analysis.has_infinite_scroll is True

    def test_infinite_scroll_needs_a_browser(self):
        html = WORDPRESS_HTML.replace(
            "</body>", "<script>new IntersectionObserver(loadMore)</script></body>"
        )
        analysis = WebsiteDetector().analyze("https://blog.test", html)
        assert analysis.top.framework == "wordpress"
        assert analysis.has_infinite_scroll is True
        assert analysis.recommended_scraper == "browser"
        assert analysis.recommended_strategy == "dynamic"


def test_framework_selectors_lookup():
    assert "content" in framework_selectors("wordpress")
    assert framework_selectors("unknown") == {}
