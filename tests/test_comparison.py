"""Unit tests for casevault.documents.comparison."""

from casevault.documents.comparison import (
    ComparisonOptions,
    compare_content,
    diff_lines,
    is_text_mime,
    levenshtein_distance,
    similarity_ratio,
)


class TestLevenshtein:
    def test_known_distances(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    def test_similarity(self):
        assert similarity_ratio("", "") == 1.0
        assert similarity_ratio("abcd", "abcx") == 0.75
        assert similarity_ratio("abc", "xyz") == 0.0

    def test_large_inputs_fall_back(self):
        a = "a" * 100
        b = "a" * 99 + "b"
        assert 0.9 < similarity_ratio(a, b, max_cells=10) < 1.0


class TestDiffLines:
    def test_added_removed_modified(self):
        added, removed, modified = diff_lines("one\ntwo\nthree", "one\nTWO\nthree\nfour")
        assert added == ["Line 4: four"]
        assert removed == []
        assert modified == ["Line 2: 'two' -> 'TWO'"]

    def test_removed_lines(self):
        added, removed, modified = diff_lines("a\nb\nc", "a\nc")
        assert removed == ["Line 2: b"]
        assert added == [] and modified == []

    def test_ignore_case_and_whitespace(self):
        options = ComparisonOptions(ignore_case=True, ignore_whitespace=True)
        assert diff_lines("Hello   World", "hello world", options) == ([], [], [])


class TestCompareContent:
    def test_self_comparison(self):
        result = compare_content(b"clause 1\nclause 2", b"clause 1\nclause 2", "text/plain")
        assert result.similarity == 1.0
        assert result.change_count == 0
        assert result.summary == "No differences found"

    def test_text_changes(self):
        result = compare_content(b"a\nb", b"a\nc\nd", "text/plain", version1=1, version2=2)
        assert not result.is_binary
        assert result.change_count == 2
        assert result.summary == "2 changes: 1 lines added, 0 lines removed, 1 lines modified"
        assert result.size_delta == 2
        assert result.to_dict()["version2"] == 2

    def test_binary_changes(self):
        result = compare_content(b"\x00\x01", b"\x00\x01\x02", "application/pdf")
        assert result.is_binary
        assert result.similarity == 0.0
        assert result.notes == ["File size changed by +1 bytes"]

    def test_checksums_short_circuit(self):
        result = compare_content(b"x", b"y", "application/pdf", checksum1="abc", checksum2="abc")
        assert result.similarity == 1.0

    def test_text_mime_detection(self):
        assert is_text_mime("text/csv")
        assert is_text_mime("application/json")
        assert not is_text_mime("image/png")
        assert not is_text_mime(None)
