"""
Tenant matching cascade for entity resolution.

Decides whether an incoming Notion record is an existing tenant and which
one. Strategies run in a fixed order and the first hit wins:

1. Direct reference: a tenant already linked to the source record id
2. Exact name
3. Contact email (only when the record has one)
4. Fuzzy name: best similarity among tenants sharing a significant word
5. Slug prefix: "acme-corp" vs "acme-corp-2" style variants
6. Base name: fuzzy comparison after stripping numeric or bracket suffixes

An explicit prior link outranks every heuristic.
Every decision is written to the matching log.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from rapidfuzz.distance import Levenshtein

from tenant_sync.sync.tenant import TenantEntity
from tenant_sync.utils.logging import get_matching_logger
from tenant_sync.utils.normalization import (
    extract_base_name,
    normalize_string,
    significant_words,
    slugify,
)

if TYPE_CHECKING:
    from tenant_sync.storage.db import RegistryDatabase

logger = logging.getLogger(__name__)

# Fuzzy and base-name matches must score strictly above this
DEFAULT_FUZZY_THRESHOLD = 0.75

# Substring similarity: longer names that mostly overlap score higher
SUBSTRING_HIGH_SCORE = 0.95
SUBSTRING_LOW_SCORE = 0.9
SUBSTRING_LENGTH_RATIO = 0.7

# Word subset similarity ("Hockey Think Tank" vs "Hockey Think Tank HQ")
WORD_SUBSET_SCORE = 0.9
WORD_SUBSET_MIN_COMMON = 2
SHORT_WORD_LENGTH = 3

# Slug suffix treated as a variant marker: numeric or up to three characters
_SLUG_SUFFIX = re.compile(r"-(?:\d+|[a-z0-9]{1,3})$")


class MatchStrategy(Enum):
    """How a match was determined, in cascade order."""

    DIRECT_REFERENCE = "direct_reference"
    EXACT_NAME = "exact_name"
    CONTACT_EMAIL = "contact_email"
    FUZZY_NAME = "fuzzy_name"
    SLUG_PREFIX = "slug_prefix"
    BASE_NAME = "base_name"


@dataclass
class MatchResult:
    """Result of a successful match."""

    entity: TenantEntity
    strategy: MatchStrategy
    score: float  # 1.0 for deterministic strategies
    reason: str  # Human-readable explanation


def name_similarity(a: str, b: str) -> float:
    """
    Similarity of two tenant names between 0.0 and 1.0.

    Scoring:
        - 1.0 when the normalized names are equal
        - 0.95 / 0.9 when one normalized name contains the other,
          depending on whether the shorter covers more than 70% of the longer
        - 0.9 when the shorter name's words all appear in the longer name,
          at least two words are shared, and the extra words are numeric or
          at most three characters
        - otherwise 1 - levenshtein / max_length

    Names are normalized by lowercasing and dropping everything that is not
    a letter or digit, so "Acme-Corp" and "acme corp" are equal.
    """
    norm_a = normalize_string(a)
    norm_b = normalize_string(b)

    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0

    shorter, longer = sorted((norm_a, norm_b), key=len)
    if shorter in longer:
        ratio = len(shorter) / len(longer)
        return SUBSTRING_HIGH_SCORE if ratio > SUBSTRING_LENGTH_RATIO else SUBSTRING_LOW_SCORE

    if _is_word_subset(a, b):
        return WORD_SUBSET_SCORE

    distance = Levenshtein.distance(norm_a, norm_b)
    return 1.0 - distance / max(len(norm_a), len(norm_b))


def _is_word_subset(a: str, b: str) -> bool:
    words_a = normalize_string(a, remove_spaces=False).split()
    words_b = normalize_string(b, remove_spaces=False).split()
    fewer, more = sorted((words_a, words_b), key=len)
    if len(fewer) < WORD_SUBSET_MIN_COMMON:
        return False
    if not set(fewer) <= set(more):
        return False
    extra = [w for w in more if w not in fewer]
    return all(w.isdigit() or len(w) <= SHORT_WORD_LENGTH for w in extra)


def strip_slug_suffix(slug: str) -> str:
    """Remove one numeric or short trailing slug segment ("acme-2" -> "acme")."""
    stripped = _SLUG_SUFFIX.sub("", slug)
    return stripped or slug


class TenantMatcher:
    """
    Resolve source records against the tenant registry.

    Usage:
        matcher = TenantMatcher(db)
        result = matcher.find_match("Acme Corp", "ops@acme.test", page_id)
        if result:
            print(f"Matched {result.entity.slug} via {result.strategy.value}")
    """

    def __init__(
        self, db: "RegistryDatabase", threshold: float = DEFAULT_FUZZY_THRESHOLD
    ):
        """
        Initialize the matcher.

        Args:
            db: Registry providing the structured lookups
            threshold: Exclusive acceptance threshold for fuzzy strategies
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be between 0.0 and 1.0, got {threshold}")
        self.db = db
        self.threshold = threshold
        self.match_log = get_matching_logger()

    def find_match(
        self, name: str, contact_email: str = "", source_id: Optional[str] = None
    ) -> Optional[MatchResult]:
        """
        Run the cascade and return the first match, or None.

        Args:
            name: Tenant name from the source record
            contact_email: Contact email from the source record, may be empty
            source_id: Notion page id of the record
        """
        self.match_log.debug(
            f"MATCH START: name='{name}' email='{contact_email}' source_id={source_id}"
        )

        strategies = (
            lambda: self._match_direct_reference(source_id),
            lambda: self._match_exact_name(name),
            lambda: self._match_email(contact_email),
            lambda: self._match_fuzzy(name),
            lambda: self._match_slug_prefix(name),
            lambda: self._match_base_name(name),
        )
        for strategy in strategies:
            result = strategy()
            if result is not None:
                self.match_log.info(
                    f"MATCHED: '{name}' -> {result.entity.slug} ({result.entity.id}) "
                    f"via {result.strategy.value} score={result.score:.3f}: "
                    f"{result.reason}"
                )
                return result

        self.match_log.info(f"NO MATCH: '{name}' (source_id={source_id})")
        return None

    # =========================================================================
    # Strategies
    # =========================================================================

    def _match_direct_reference(self, source_id: Optional[str]) -> Optional[MatchResult]:
        if not source_id:
            return None
        linked = self.db.find_by_source_record_id(source_id)
        if not linked:
            self.match_log.debug(f"  direct_reference: no tenant linked to {source_id}")
            return None
        if len(linked) > 1:
            logger.warning(
                f"{len(linked)} tenants linked to source record {source_id}; "
                f"using oldest {linked[0].id} ({linked[0].slug})"
            )
        return MatchResult(
            entity=linked[0],
            strategy=MatchStrategy.DIRECT_REFERENCE,
            score=1.0,
            reason=f"linked to source record {source_id}",
        )

    def _match_exact_name(self, name: str) -> Optional[MatchResult]:
        if not name:
            return None
        found = self.db.find_by_name(name)
        if not found:
            self.match_log.debug("  exact_name: none")
            return None
        return MatchResult(
            entity=found[0],
            strategy=MatchStrategy.EXACT_NAME,
            score=1.0,
            reason=f"name equals '{name}'",
        )

    def _match_email(self, contact_email: str) -> Optional[MatchResult]:
        email = (contact_email or "").strip()
        if not email:
            self.match_log.debug("  contact_email: skipped, record has no email")
            return None
        found = self.db.find_by_email(email)
        if not found:
            self.match_log.debug(f"  contact_email: none for {email}")
            return None
        return MatchResult(
            entity=found[0],
            strategy=MatchStrategy.CONTACT_EMAIL,
            score=1.0,
            reason=f"contact email {email}",
        )

    def _best_fuzzy(
        self, name: str, candidates: list[TenantEntity], use_base_names: bool = False
    ) -> Optional[tuple[TenantEntity, float]]:
        best: Optional[TenantEntity] = None
        best_score = 0.0
        for candidate in candidates:
            other = extract_base_name(candidate.name) if use_base_names else candidate.name
            score = name_similarity(name, other)
            self.match_log.debug(
                f"    candidate '{candidate.name}' ({candidate.slug}) score={score:.3f}"
            )
            # Strict comparison keeps the oldest candidate on ties
            if score > best_score:
                best, best_score = candidate, score
        if best is None:
            return None
        return best, best_score

    def _match_fuzzy(self, name: str) -> Optional[MatchResult]:
        words = significant_words(name)
        candidates = self.db.find_by_name_words(words)
        if not candidates:
            self.match_log.debug(f"  fuzzy_name: no candidates for words {words}")
            return None

        best = self._best_fuzzy(name, candidates)
        if best is None or best[1] <= self.threshold:
            self.match_log.debug(
                f"  fuzzy_name: best score "
                f"{best[1] if best else 0.0:.3f} not above {self.threshold}"
            )
            return None

        entity, score = best
        return MatchResult(
            entity=entity,
            strategy=MatchStrategy.FUZZY_NAME,
            score=score,
            reason=f"'{name}' ~ '{entity.name}'",
        )

    def _match_slug_prefix(self, name: str) -> Optional[MatchResult]:
        new_slug = slugify(name)
        stripped_new = strip_slug_suffix(new_slug)
        candidates = self.db.find_by_slug_prefix(stripped_new)
        if not candidates:
            self.match_log.debug(f"  slug_prefix: no slugs starting with {stripped_new}")
            return None

        checks = (
            (lambda e: e.slug == new_slug, f"slug equals {new_slug}"),
            (
                lambda e: stripped_new != new_slug and e.slug == stripped_new,
                f"slug {stripped_new} is {new_slug} without suffix",
            ),
            (
                lambda e: e.slug != new_slug and strip_slug_suffix(e.slug) == new_slug,
                f"existing slug is {new_slug} with a suffix",
            ),
        )
        for check, reason in checks:
            for entity in candidates:
                if check(entity):
                    return MatchResult(
                        entity=entity,
                        strategy=MatchStrategy.SLUG_PREFIX,
                        score=1.0,
                        reason=reason,
                    )

        self.match_log.debug(f"  slug_prefix: {len(candidates)} candidate(s), none equal")
        return None

    def _match_base_name(self, name: str) -> Optional[MatchResult]:
        base = extract_base_name(name)
        if not base or base == name.strip():
            return None

        candidates = self.db.find_by_name_words(significant_words(base))
        best = self._best_fuzzy(base, candidates, use_base_names=True)
        if best is None or best[1] <= self.threshold:
            self.match_log.debug(f"  base_name: no candidate above threshold for '{base}'")
            return None

        entity, score = best
        return MatchResult(
            entity=entity,
            strategy=MatchStrategy.BASE_NAME,
            score=score,
            reason=f"base name '{base}' ~ '{extract_base_name(entity.name)}'",
        )
