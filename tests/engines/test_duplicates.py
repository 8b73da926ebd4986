"""
Tests for exact and near duplicate content detection.
"""

from site_audit.core.config import Settings
from site_audit.engines.base import Severity
from site_audit.engines.duplicates.engine import DuplicateContentDetector, content_hash, jaccard_similarity
from tests.factories import make_page

BASE_TEXT = " ".join(f"keyword{i:03d}" for i in range(40))


class TestHelpers:

    def test_hash_ignores_case_and_whitespace(self):
        assert content_hash("Hello   World\n") == content_hash("hello world")

    def test_jaccard_ignores_short_words(self):
        assert jaccard_similarity("the cat sat", "a dog ran") == 0.0
        assert jaccard_similarity("widgets gadgets", "widgets gizmos") == 1 / 3


class TestDuplicateContentDetector:

    def test_exact_duplicates_grouped(self, settings):
        pages = [
            make_page("https://example.com/a", content=BASE_TEXT),
            make_page("https://example.com/b", content=BASE_TEXT.upper()),
            make_page("https://example.com/c", content="unique " * 30),
        ]
        groups = DuplicateContentDetector(settings).detect(pages)

        assert len(groups) == 1
        assert groups[0].type == "exact"
        assert groups[0].similarity == 1.0
        assert groups[0].urls == ["https://example.com/a", "https://example.com/b"]

    def test_near_duplicates_over_threshold(self, settings):
        # 40 shared words plus 2 distinct ones each: 40 / 44 ≈ 0.91
        pages = [
            make_page("https://example.com/a", content=BASE_TEXT + " alphaone alphatwo"),
            make_page("https://example.com/b", content=BASE_TEXT + " betaone betatwo"),
        ]
        groups = DuplicateContentDetector(settings).detect(pages)

        assert len(groups) == 1
        assert groups[0].type == "near"
        assert round(groups[0].similarity, 2) == 0.91

    def test_short_content_is_ignored(self, settings):
        pages = [
            make_page("https://example.com/a", content="short text"),
            make_page("https://example.com/b", content="short text"),
        ]
        assert DuplicateContentDetector(settings).detect(pages) == []

    def test_comparison_cap(self):
        settings = Settings(DUPLICATE_MAX_COMPARISONS=1)
        pages = [
            make_page("https://example.com/a", content=BASE_TEXT + " first"),
            make_page("https://example.com/b", content="different words entirely " * 10),
            make_page("https://example.com/c", content=BASE_TEXT + " third"),
        ]
        # Only a↔b is compared before the cap is reached
        assert DuplicateContentDetector(settings).detect(pages) == []

    def test_groups_sorted_by_size(self, settings):
        pages = [
            make_page("https://example.com/a", content="pair content " * 20),
            make_page("https://example.com/b", content="pair content " * 20),
            make_page("https://example.com/x", content=BASE_TEXT),
            make_page("https://example.com/y", content=BASE_TEXT),
            make_page("https://example.com/z", content=BASE_TEXT),
        ]
        groups = DuplicateContentDetector(settings).detect(pages)
        assert [len(g.urls) for g in groups] == [3, 2]

    def test_issues(self, settings):
        pages = [
            make_page(f"https://example.com/{i}", content=BASE_TEXT)
            for i in range(5)
        ]
        report = DuplicateContentDetector(settings).analyze(pages)

        assert len(report.issues) == 1
        issue = report.issues[0]
        assert issue.url == "https://example.com/0"
        assert issue.severity == Severity.HIGH
        assert issue.issue == (
            "Exact duplicate content with 4 other page(s): "
            "https://example.com/1, https://example.com/2..."
        )
