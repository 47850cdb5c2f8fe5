"""Tests for social media profile discovery."""

from sitescout.services.social import (
    detect_platform,
    extract_social_accounts,
    extract_username,
    validate_profile_url,
)

HTML = """
<html><head>
  <meta name="twitter:creator" content="https://twitter.com/janedoe">
</head>
<body>
  <header><a href="https://www.linkedin.com/company/acme/">LinkedIn</a></header>
  <p>
    <a href="https://www.facebook.com/sharer/sharer.php?u=https://acme.test">Share</a>
    <a href="https://twitter.com/intent/tweet?text=hi">Tweet</a>
    <a href="https://www.instagram.com/p/Cabc123/">A post</a>
    <a href="https://github.com/acme">Code</a>
  </p>
  <footer>
    <a href="https://www.facebook.com/acmewidgets">Facebook</a>
    <a href="https://github.com/acme/">Code again</a>
  </footer>
</body></html>
"""


class TestPlatformDetection:
    def test_share_links_rejected(self):
        assert detect_platform("https://www.facebook.com/sharer/sharer.php?u=x") is None
        assert detect_platform("https://twitter.com/intent/tweet") is None
        assert detect_platform("https://www.linkedin.com/sharing/share-offsite/?url=x") is None

    def test_profiles_accepted(self):
        assert detect_platform("https://www.facebook.com/acmewidgets") == "facebook"
        assert detect_platform("https://x.com/acme") == "twitter"
        assert detect_platform("https://www.youtube.com/@acme") == "youtube"
        assert detect_platform("https://www.tiktok.com/@acme") == "tiktok"

    def test_validate_profile_url(self):
        assert validate_profile_url("https://www.instagram.com/acme/", "instagram")
        assert not validate_profile_url("https://www.instagram.com/acme/", "twitter")
        assert not validate_profile_url("https://www.instagram.com/acme/", "myspace")

    def test_usernames(self):
        assert extract_username("https://twitter.com/acme", "twitter") == "acme"
        assert extract_username("https://linkedin.com/in/jane-doe", "linkedin") == "jane-doe"
        assert extract_username("https://youtube.com/channel/UC123", "youtube") == "UC123"
        assert extract_username("https://facebook.com/groups", "facebook") is None


class TestExtractSocialAccounts:
    def test_profiles_found_and_shares_excluded(self):
        accounts = extract_social_accounts(HTML, "https://acme.test")
        found = {(a["platform"], a["url"]) for a in accounts}
        assert found == {
            ("facebook", "https://facebook.com/acmewidgets"),
            ("linkedin", "https://linkedin.com/company/acme"),
            ("github", "https://github.com/acme"),
            ("twitter", "https://twitter.com/janedoe"),
        }

    def test_locations(self):
        accounts = {a["platform"]: a for a in extract_social_accounts(HTML, "https://acme.test")}
        assert accounts["linkedin"]["location"] == "header"
        assert accounts["facebook"]["location"] == "footer"
        # Body hit upgraded by the footer occurrence
        assert accounts["github"]["location"] == "footer"
        assert accounts["twitter"]["location"] == "meta"
        assert accounts["facebook"]["username"] == "acmewidgets"

    def test_malformed_links_skipped(self):
        html = '<footer><a href="http://[twitter.com/x">Bad</a><a href="https://github.com/acme">Code</a></footer>'
        for base_url in ("https://acme.test", ""):
            accounts = extract_social_accounts(html, base_url)
            assert [a["platform"] for a in accounts] == ["github"]

    def test_empty(self):
        assert extract_social_accounts("") == []
