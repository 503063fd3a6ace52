"""Tests for string normalization utility."""

from tenant_sync.utils.normalization import (
    DEFAULT_SLUG,
    extract_base_name,
    normalize_string,
    significant_words,
    slugify,
)


class TestNormalizeStringBasic:
    """Test basic normalization functionality."""

    def test_empty_string_returns_empty(self):
        """Empty string should return empty string."""
        assert normalize_string("") == ""

    def test_lowercase_conversion(self):
        """String should be converted to lowercase."""
        assert normalize_string("HELLO") == "hello"

    def test_unicode_normalization(self):
        """Accented characters should fold to their base letter."""
        assert normalize_string("café") == "cafe"
        assert normalize_string("café") == "cafe"

    def test_punctuation_removed(self):
        """Everything that is not a letter or digit should be dropped."""
        assert normalize_string("Acme-Corp, Inc.") == "acmecorpinc"

    def test_spaces_removed_by_default(self):
        assert normalize_string("hello world") == "helloworld"

    def test_spaces_collapsed_when_kept(self):
        """Runs of whitespace collapse to a single space."""
        assert normalize_string("  hello   world ", remove_spaces=False) == "hello world"


class TestSlugify:
    """Test slug generation."""

    def test_words_joined_with_hyphens(self):
        assert slugify("Hockey Think Tank") == "hockey-think-tank"

    def test_punctuation_dropped(self):
        assert slugify("ACME, Corp.") == "acme-corp"

    def test_repeated_hyphens_collapsed(self):
        assert slugify("Acme -- Corp") == "acme-corp"

    def test_leading_and_trailing_hyphens_stripped(self):
        assert slugify("-Acme-") == "acme"

    def test_empty_name_gets_default_slug(self):
        """A name with no usable characters still produces a slug."""
        assert slugify("") == DEFAULT_SLUG
        assert slugify("!!!") == DEFAULT_SLUG


class TestExtractBaseName:
    """Test base name extraction."""

    def test_trailing_number_removed(self):
        assert extract_base_name("Hockey Think Tank 123") == "Hockey Think Tank"

    def test_dash_qualifier_removed(self):
        assert extract_base_name("Acme - Staging") == "Acme"

    def test_hyphenated_compound_name_kept(self):
        assert extract_base_name("Hewlett-Packard") == "Hewlett-Packard"
        assert extract_base_name("Coca-Cola Bottling") == "Coca-Cola Bottling"

    def test_parenthesized_qualifier_removed(self):
        assert extract_base_name("Acme (Old)") == "Acme"

    def test_bracketed_qualifier_removed(self):
        assert extract_base_name("Acme [Test]") == "Acme"

    def test_plain_name_unchanged(self):
        assert extract_base_name("  Acme Corp ") == "Acme Corp"


class TestSignificantWords:
    """Test candidate word extraction."""

    def test_short_words_dropped(self):
        assert significant_words("The Big Acme Co") == ["the", "big", "acme"]

    def test_custom_minimum_length(self):
        assert significant_words("The Big Acme Co", min_length=4) == ["acme"]

    def test_empty_name(self):
        assert significant_words("") == []
