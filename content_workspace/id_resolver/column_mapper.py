"""
ID Resolver Column Mapping

Deterministic header alias library for the three ID Resolver inputs.

RULES:
- Deterministic string matching only. No fuzzy matching.
- Case-insensitive. Whitespace stripped before comparison.
- Same input always produces same output.
- Suggestions are proposals. The operator confirms or overrides every slot
  before resolution runs.
- If a header does not match a known variant exactly
  (case-insensitive + stripped), it is not suggested.

Public API:
  ColumnMapping
  resolve_columns(columns, file_kind) -> dict[str, str]
  suggest_mapping(expanded_columns, library_columns, lesson_columns) -> dict[str, str]
  get_unmapped_slots(mapping) -> list[str]
  find_missing_columns(mapping, columns_by_file) -> list[str]
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import Iterable, Mapping, Union

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File kinds and mapping slots
# ---------------------------------------------------------------------------

EXPANDED = "expanded"
LIBRARY = "library"
LESSONS = "lessons"

FILE_KINDS: tuple[str, ...] = (EXPANDED, LIBRARY, LESSONS)

FILE_LABELS: dict[str, str] = {
    EXPANDED: "Expanded Rows",
    LIBRARY: "Full Library",
    LESSONS: "Lessons",
}


@dataclass(frozen=True)
class ColumnMapping:
    """
    Source column name for each semantic field of the three inputs.

    Every slot must name a column of the matching file before resolution
    runs. The resolver itself reads whatever is configured and treats a
    missing column as blank.
    """
    # Expanded rows
    can_do_column: str = ""
    cefr_column: str = ""
    skill_column: str = ""
    triad_column: str = ""

    # Full library
    library_id_column: str = ""
    library_can_do_column: str = ""
    library_cefr_column: str = ""
    library_skill_column: str = ""

    # Lessons
    lesson_id_column: str = ""
    lesson_lul_column: str = ""

    @classmethod
    def from_dict(cls, values: Mapping[str, str]) -> "ColumnMapping":
        """Build from a plain slot dict. Unknown keys are ignored, absent slots are blank."""
        known = {f.name for f in fields(cls)}
        return cls(**{
            name: (values.get(name) or "")
            for name in known
        })

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


MAPPING_SLOTS: tuple[str, ...] = tuple(f.name for f in fields(ColumnMapping))

SLOTS_BY_FILE: dict[str, tuple[str, ...]] = {
    EXPANDED: ("can_do_column", "cefr_column", "skill_column", "triad_column"),
    LIBRARY: (
        "library_id_column",
        "library_can_do_column",
        "library_cefr_column",
        "library_skill_column",
    ),
    LESSONS: ("lesson_id_column", "lesson_lul_column"),
}

# ---------------------------------------------------------------------------
# Header alias libraries
# ---------------------------------------------------------------------------
# Each section maps raw header variants seen in content spreadsheets to the
# mapping slot they suggest. Keys are written in their natural casing;
# comparison strips and lowercases them. A variant may appear in only one
# slot per file kind.
# ---------------------------------------------------------------------------

_CAN_DO_VARIANTS: tuple[str, ...] = (
    "can_do",
    "can-do",
    "can do",
    "cando",
    "Can Do Statement",
    "Can-Do Statement",
    "can_do_statement",
    "CanDo Statement",
    "Statement",
    "Competency Statement",
    "Descriptor",
)

_CEFR_VARIANTS: tuple[str, ...] = (
    "cefr",
    "CEFR Level",
    "cefr_level",
    "CEFR-Level",
    "Level",
)

_SKILL_VARIANTS: tuple[str, ...] = (
    "skill",
    "Skill Area",
    "skill_area",
    "Skills",
    "Language Skill",
)

_TRIAD_VARIANTS: tuple[str, ...] = (
    "triad",
    "lul",
    "LuL",
    "Lesson Triad",
    "lesson_triad",
    "Unit Lesson",
    "Lesson Code",
)

_EXPANDED_VARIANTS: dict[str, str] = {
    **{v: "can_do_column" for v in _CAN_DO_VARIANTS},
    **{v: "cefr_column" for v in _CEFR_VARIANTS},
    **{v: "skill_column" for v in _SKILL_VARIANTS},
    **{v: "triad_column" for v in _TRIAD_VARIANTS},
}

_LIBRARY_VARIANTS: dict[str, str] = {
    "id": "library_id_column",
    "Competency ID": "library_id_column",
    "competency_id": "library_id_column",
    "Comp ID": "library_id_column",
    "uuid": "library_id_column",
    **{v: "library_can_do_column" for v in _CAN_DO_VARIANTS},
    **{v: "library_cefr_column" for v in _CEFR_VARIANTS},
    **{v: "library_skill_column" for v in _SKILL_VARIANTS},
}

_LESSON_VARIANTS: dict[str, str] = {
    "id": "lesson_id_column",
    "Lesson ID": "lesson_id_column",
    "lesson_id": "lesson_id_column",
    "uuid": "lesson_id_column",
    **{v: "lesson_lul_column" for v in _TRIAD_VARIANTS},
}

_ALL_SOURCES: list[tuple[str, dict[str, str]]] = [
    (EXPANDED, _EXPANDED_VARIANTS),
    (LIBRARY, _LIBRARY_VARIANTS),
    (LESSONS, _LESSON_VARIANTS),
]


def _normalize_header(raw: str) -> str:
    """Lowercase + strip. Used for alias lookup only."""
    return str(raw).strip().lower()


def _build_alias_lookup(file_kind: str, variants: dict[str, str]) -> dict[str, str]:
    """
    Flatten one variant dict into a normalized lookup.

    Raises ValueError if the same normalized variant maps to different
    slots within one file kind (unresolvable conflict).
    """
    lookup: dict[str, str] = {}
    for raw_variant, slot in variants.items():
        if slot not in SLOTS_BY_FILE[file_kind]:
            raise ValueError(
                f"Alias '{raw_variant}' for '{file_kind}' targets slot '{slot}' "
                f"which does not belong to that file."
            )
        normalized_variant = _normalize_header(raw_variant)
        existing = lookup.get(normalized_variant)
        if existing is not None and existing != slot:
            raise ValueError(
                f"Alias library conflict detected in '{file_kind}': "
                f"variant '{raw_variant}' (normalized: '{normalized_variant}') "
                f"maps to '{slot}' but was already mapped to '{existing}'."
            )
        lookup[normalized_variant] = slot
    return lookup


# Module-level alias lookups, built once, never mutated.
_ALIAS_LOOKUPS: dict[str, dict[str, str]] = {
    file_kind: _build_alias_lookup(file_kind, variants)
    for file_kind, variants in _ALL_SOURCES
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_columns(columns: Iterable[str], file_kind: str) -> dict[str, str]:
    """
    Resolve raw headers of one input file to mapping slots.

    Parameters
    ----------
    columns : iterable of str
        Header row of the file, in file order.
    file_kind : str
        One of "expanded", "library", "lessons".

    Returns
    -------
    dict[str, str]
        {raw_header: slot} for every header that matched a known variant.
        When two headers match the same slot the first one in file order
        keeps it; the later one is logged and left unresolved.
    """
    if file_kind not in _ALIAS_LOOKUPS:
        raise ValueError(f"Unknown file kind '{file_kind}'. Expected one of {FILE_KINDS}.")

    lookup = _ALIAS_LOOKUPS[file_kind]
    resolved: dict[str, str] = {}
    taken: set[str] = set()
    for col in columns:
        slot = lookup.get(_normalize_header(col))
        if slot is None:
            continue
        if slot in taken:
            logger.info(
                "[column_mapper] %s: '%s' also matches '%s'; keeping earlier column",
                file_kind, col, slot,
            )
            continue
        taken.add(slot)
        resolved[col] = slot
        logger.info("[column_mapper] %s: '%s' → '%s'", file_kind, col, slot)
    return resolved


def suggest_mapping(
    expanded_columns: Iterable[str],
    library_columns: Iterable[str],
    lesson_columns: Iterable[str],
) -> dict[str, str]:
    """
    Propose {slot: raw_header} for all three files.

    Only slots with a suggestion are present. Use get_unmapped_slots() to
    list what the operator still has to pick.
    """
    suggestion: dict[str, str] = {}
    for file_kind, columns in (
        (EXPANDED, expanded_columns),
        (LIBRARY, library_columns),
        (LESSONS, lesson_columns),
    ):
        for raw_header, slot in resolve_columns(columns, file_kind).items():
            suggestion[slot] = raw_header
    return suggestion


def get_unmapped_slots(mapping: Union[ColumnMapping, Mapping[str, str]]) -> list[str]:
    """Return slots with no column assigned, in declaration order."""
    values = mapping.as_dict() if isinstance(mapping, ColumnMapping) else mapping
    return [slot for slot in MAPPING_SLOTS if not values.get(slot)]


def find_missing_columns(
    mapping: Union[ColumnMapping, Mapping[str, str]],
    columns_by_file: Mapping[str, Iterable[str]],
) -> list[str]:
    """
    Return assigned slots whose column is absent from its file.

    Blank slots are skipped here; get_unmapped_slots() reports them.
    """
    values = mapping.as_dict() if isinstance(mapping, ColumnMapping) else mapping
    missing: list[str] = []
    for file_kind, slots in SLOTS_BY_FILE.items():
        available = set(columns_by_file.get(file_kind, ()))
        for slot in slots:
            column = values.get(slot)
            if column and column not in available:
                missing.append(slot)
    return missing
