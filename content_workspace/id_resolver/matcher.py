"""
ID Resolver Matching Engine

Deterministic competency + lesson ID resolution for expanded can-do rows.

RULES:
- Exact match on normalized keys only. No fuzzy matching. No partial matching.
- Every expanded row produces exactly one output row, in input order.
- A failed lookup is data (null id + false flag), never an exception.
- Indexes are built fresh on every call. Nothing is cached between calls.

Public API:
  normalize_key(value) -> str
  canonicalize_cefr(value) -> str
  normalize_lul(value) -> str
  create_competency_key(can_do, cefr, skill) -> str
  resolve_ids(expanded_rows, library_rows, lesson_rows, mapping) -> MatchResult
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional, Sequence, Union

from content_workspace.id_resolver.column_mapper import ColumnMapping

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COMPETENCY_KEY_DELIMITER: str = "|"

DUPLICATE_POLICIES: tuple[str, ...] = ("last", "first", "strict")
DEFAULT_DUPLICATE_POLICY: str = "last"

_SMART_SINGLE_QUOTES = re.compile("[\u2018\u2019]")
_SMART_DOUBLE_QUOTES = re.compile("[\u201C\u201D]")
_WHITESPACE_RUN = re.compile(r"\s+")
_NON_CEFR_CHARS = re.compile(r"[^a-z0-9]")

Row = Mapping[str, Any]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class MatchStats:
    total_rows: int
    competency_matches: int
    competency_misses: int
    lesson_matches: int
    lesson_misses: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class KeyConflict:
    """A key that more than one distinct identifier claims (strict policy only)."""
    index: str
    key: str
    ids: list[str]


@dataclass
class MatchResult:
    matched: list[dict[str, Any]]
    stats: MatchStats
    conflicts: list[KeyConflict] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_key(value: Any) -> str:
    """
    Canonical comparison form of a free-text cell.

    NFKD, smart quotes to ASCII, lowercase, trim, collapse whitespace.
    None and NaN become "". Never raises.
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        if isinstance(value, float) and math.isnan(value):
            return ""
        value = str(value)
    if not value:
        return ""

    text = unicodedata.normalize("NFKD", value)
    text = _SMART_SINGLE_QUOTES.sub("'", text)
    text = _SMART_DOUBLE_QUOTES.sub('"', text)
    text = text.lower().strip()
    return _WHITESPACE_RUN.sub(" ", text)


def canonicalize_cefr(value: Any) -> str:
    """'a1', 'A1 ', ' A-1 ' → 'A1'."""
    return _NON_CEFR_CHARS.sub("", normalize_key(value)).upper()


def normalize_lul(value: Any) -> str:
    """Lesson triad key: normalized, with every whitespace character removed."""
    return _WHITESPACE_RUN.sub("", normalize_key(value))


def create_competency_key(can_do: Any, cefr: Any, skill: Any) -> str:
    """Composite lookup key: can-do | CEFR | skill."""
    return COMPETENCY_KEY_DELIMITER.join((
        normalize_key(can_do),
        canonicalize_cefr(cefr),
        normalize_key(skill),
    ))


# ---------------------------------------------------------------------------
# Internal utilities
# ---------------------------------------------------------------------------


def _cell(row: Row, column: Optional[str]) -> Any:
    """Configured column value, or None when the row lacks it."""
    if not column:
        return None
    return row.get(column)


def _build_index(
    entries: list[tuple[str, Any]],
    index_name: str,
    duplicate_policy: str,
) -> tuple[dict[str, Any], list[KeyConflict]]:
    """
    Map key → identifier.

    "last": later entries overwrite earlier ones.
    "first": the earliest entry for a key is kept.
    "strict": keys claimed by more than one distinct identifier are
    dropped from the index and reported as conflicts.
    """
    index: dict[str, Any] = {}
    if duplicate_policy == "last":
        for key, ident in entries:
            index[key] = ident
        return index, []

    if duplicate_policy == "first":
        for key, ident in entries:
            index.setdefault(key, ident)
        return index, []

    claims: dict[str, list[Any]] = {}
    for key, ident in entries:
        seen = claims.setdefault(key, [])
        if ident not in seen:
            seen.append(ident)

    conflicts: list[KeyConflict] = []
    for key, idents in claims.items():
        if len(idents) == 1:
            index[key] = idents[0]
            continue
        conflicts.append(KeyConflict(
            index=index_name,
            key=key,
            ids=["" if i is None else str(i) for i in idents],
        ))
        logger.warning(
            "[matcher] %s key '%s' claimed by %d identifiers: %s",
            index_name, key, len(idents), ", ".join(conflicts[-1].ids),
        )
    return index, conflicts


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def resolve_ids(
    expanded_rows: Sequence[Row],
    library_rows: Sequence[Row],
    lesson_rows: Sequence[Row],
    mapping: Union[ColumnMapping, Mapping[str, str]],
    duplicate_policy: str = DEFAULT_DUPLICATE_POLICY,
) -> MatchResult:
    """
    Resolve competency and lesson IDs for every expanded row.

    Parameters
    ----------
    expanded_rows : sequence of mappings
        Rows to annotate. Never mutated.
    library_rows : sequence of mappings
        Competency library. Keyed on can-do + CEFR + skill.
    lesson_rows : sequence of mappings
        Lesson library. Keyed on the normalized LuL triad.
    mapping : ColumnMapping or dict
        Column names for each semantic field. Columns absent from a row
        read as blank.
    duplicate_policy : str
        "last" (default) lets the later library row win a shared key.
        "first" keeps the earlier one. "strict" turns keys with more than
        one distinct identifier into misses and reports them in
        MatchResult.conflicts.

    Returns
    -------
    MatchResult
        One matched row per expanded row, in input order, plus stats.
        The derived fields (competency_id, lesson_id and the two
        *_match_found flags) replace any input column of the same name.
    """
    if duplicate_policy not in DUPLICATE_POLICIES:
        raise ValueError(
            f"Unknown duplicate policy '{duplicate_policy}'. "
            f"Expected one of {DUPLICATE_POLICIES}."
        )
    if not isinstance(mapping, ColumnMapping):
        mapping = ColumnMapping.from_dict(mapping)

    # Step 1: competency index
    competency_index, competency_conflicts = _build_index(
        [
            (
                create_competency_key(
                    _cell(row, mapping.library_can_do_column),
                    _cell(row, mapping.library_cefr_column),
                    _cell(row, mapping.library_skill_column),
                ),
                _cell(row, mapping.library_id_column),
            )
            for row in library_rows
        ],
        "competency",
        duplicate_policy,
    )

    # Step 2: lesson index
    lesson_index, lesson_conflicts = _build_index(
        [
            (
                normalize_lul(_cell(row, mapping.lesson_lul_column)),
                _cell(row, mapping.lesson_id_column),
            )
            for row in lesson_rows
        ],
        "lesson",
        duplicate_policy,
    )

    logger.info(
        "[matcher] indexes built: %d competency keys, %d lesson keys",
        len(competency_index), len(lesson_index),
    )

    # Step 3: single pass over expanded rows
    matched: list[dict[str, Any]] = []
    competency_matches = 0
    lesson_matches = 0

    for row in expanded_rows:
        competency_key = create_competency_key(
            _cell(row, mapping.can_do_column),
            _cell(row, mapping.cefr_column),
            _cell(row, mapping.skill_column),
        )
        lesson_key = normalize_lul(_cell(row, mapping.triad_column))

        competency_found = competency_key in competency_index
        lesson_found = lesson_key in lesson_index
        if competency_found:
            competency_matches += 1
        if lesson_found:
            lesson_matches += 1

        matched.append({
            **row,
            "competency_id": competency_index.get(competency_key),
            "lesson_id": lesson_index.get(lesson_key),
            "competency_match_found": competency_found,
            "lesson_match_found": lesson_found,
        })

    # Step 4: statistics
    total_rows = len(expanded_rows)
    stats = MatchStats(
        total_rows=total_rows,
        competency_matches=competency_matches,
        competency_misses=total_rows - competency_matches,
        lesson_matches=lesson_matches,
        lesson_misses=total_rows - lesson_matches,
    )

    return MatchResult(
        matched=matched,
        stats=stats,
        conflicts=competency_conflicts + lesson_conflicts,
    )
