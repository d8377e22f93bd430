"""
Tests for the relevance signal primitives.

Covers pg_trgm-compatible trigram similarity, cosine similarity, the coarse
keyword heuristic and contextual snippet extraction.
"""

import pytest

from receipt_search.utils.text_similarity import (
    cosine_similarity,
    extract_contextual_snippets,
    keyword_score,
    trigram_similarity,
    trigrams,
)


class TestTrigrams:
    """pg_trgm trigram extraction."""

    def test_word_is_padded(self):
        """Words get two leading and one trailing space."""
        assert trigrams("cat") == frozenset({"  c", " ca", "cat", "at "})

    def test_lowercases_and_splits_on_punctuation(self):
        assert trigrams("Cat-DOG") == trigrams("cat dog")

    def test_empty(self):
        assert trigrams("") == frozenset()
        assert trigrams(None) == frozenset()


class TestTrigramSimilarity:
    """Similarity as shared trigrams over the union."""

    def test_identical_strings(self):
        assert trigram_similarity("Starbucks", "starbucks") == 1.0

    def test_known_value(self):
        """'word' vs 'two words' matches PostgreSQL's similarity() (4/11)."""
        assert trigram_similarity("word", "two words") == pytest.approx(4 / 11)

    def test_disjoint(self):
        assert trigram_similarity("abc", "xyz") == 0.0

    def test_missing_side(self):
        assert trigram_similarity(None, "coffee") == 0.0
        assert trigram_similarity("coffee", "") == 0.0

    def test_symmetric(self):
        assert trigram_similarity("Starbuks", "Starbucks") == trigram_similarity("Starbucks", "Starbuks")


class TestCosineSimilarity:

    def test_parallel_vectors(self):
        assert cosine_similarity([1.0, 2.0], [2.0, 4.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError, match="dimensions differ"):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


class TestKeywordScore:
    """Exact containment 1.0, first/last token 0.7, otherwise 0."""

    def test_full_query_contained(self):
        assert keyword_score("Coffee at Starbucks downtown", "starbucks downtown") == 1.0

    def test_first_token_only(self):
        assert keyword_score("Starbucks Reserve", "starbucks airport") == 0.7

    def test_last_token_only(self):
        assert keyword_score("Airport lounge", "starbucks airport") == 0.7

    def test_middle_token_ignored(self):
        """Only the first and last tokens are considered for partial matches."""
        assert keyword_score("grande latte", "hot grande coffee") == 0.0

    def test_no_match(self):
        assert keyword_score("Shell gas station", "coffee") == 0.0

    def test_blank_query(self):
        assert keyword_score("anything", "   ") == 0.0
        assert keyword_score("anything", "") == 0.0

    def test_missing_content(self):
        assert keyword_score(None, "coffee") == 0.0


class TestContextualSnippets:

    def test_window_around_match(self):
        content = " ".join(f"w{i}" for i in range(30)).replace("w15", "coffee")
        snippets = extract_contextual_snippets(content, "coffee", window_words=4, max_snippets=3)
        assert snippets == ["...w13 w14 coffee w16 w17..."]

    def test_match_at_start_has_no_leading_ellipsis(self):
        snippets = extract_contextual_snippets("coffee and bagel for two", "coffee", window_words=4)
        assert snippets[0].startswith("coffee")
        assert snippets[0].endswith("...")

    def test_limits_snippet_count(self):
        content = "tea " * 10
        snippets = extract_contextual_snippets(content, "tea", window_words=2, max_snippets=3)
        assert len(snippets) == 3

    def test_falls_back_to_leading_words(self):
        content = "one two three four five six"
        snippets = extract_contextual_snippets(content, "zebra", window_words=3)
        assert snippets == ["one two three..."]

    def test_empty_inputs(self):
        assert extract_contextual_snippets("", "coffee") == []
        assert extract_contextual_snippets("coffee", "  ") == []
