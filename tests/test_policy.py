import pytest

from pipelines.errors import NetworkError
from pipelines.policy import AdmissionPolicy, RuleSet
from tests.conftest import FakeFetcher

BASE = "https://docs.example.com"
ROBOTS = """
User-agent: *
Disallow: /private/
Crawl-delay: 2

User-agent: BadBot
Disallow: /
"""


class TestRuleSet:
    def test_prefix_disallow(self):
        rules = RuleSet(BASE + "/robots.txt", ROBOTS)

        assert rules.is_allowed(BASE + "/guide/intro", "Googlebot")
        assert not rules.is_allowed(BASE + "/private/keys", "Googlebot")
        assert not rules.is_allowed(BASE + "/guide/intro", "BadBot")

    def test_crawl_delay(self):
        rules = RuleSet(BASE + "/robots.txt", ROBOTS)

        assert rules.crawl_delay("Googlebot") == 2.0
        assert rules.crawl_delay("BadBot") is None


class TestAdmissionPolicy:
    async def test_load_parses_robots(self):
        fetcher = FakeFetcher({BASE + "/robots.txt": ROBOTS})

        policy = await AdmissionPolicy.load(fetcher, BASE, user_agent="test-agent")

        assert fetcher.calls == [BASE + "/robots.txt"]
        assert policy.rules is not None
        assert not policy.is_allowed(BASE + "/private/x", "Googlebot")
        assert policy.is_allowed(BASE + "/public/x", "Googlebot")
        assert policy.crawl_delay("Googlebot") == 2.0

    @pytest.mark.parametrize("response", [None, (500, "error"), NetworkError(BASE, "refused")])
    async def test_load_fails_open(self, response):
        pages = {} if response is None else {BASE + "/robots.txt": response}
        policy = await AdmissionPolicy.load(FakeFetcher(pages), BASE)

        assert policy.rules is None
        assert policy.is_allowed(BASE + "/private/x", "Googlebot")
        assert policy.crawl_delay("Googlebot") is None

    async def test_base_url_with_path(self):
        fetcher = FakeFetcher()

        await AdmissionPolicy.load(fetcher, BASE + "/docs")

        assert fetcher.calls == [BASE + "/docs/robots.txt"]

    def test_exclude_patterns(self):
        policy = AdmissionPolicy(exclude_patterns=[r"/changelog", r"\.pdf$"])

        assert not policy.is_allowed(BASE + "/CHANGELOG/v2", "Googlebot")
        assert not policy.is_allowed(BASE + "/manual.pdf", "Googlebot")
        assert policy.is_allowed(BASE + "/guide", "Googlebot")

    def test_no_rules_allows_everything(self):
        assert AdmissionPolicy().is_allowed(BASE + "/anything", "Googlebot")
