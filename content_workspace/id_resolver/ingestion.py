"""
ID Resolver Ingestion Pipeline

CONTRACT ANCHORS
----------------
- Three files required: Expanded Rows + Full Library + Lessons
- Every mapping slot must name a column of its file before matching runs
- Competency join: normalized can-do + CEFR + skill (exact match only)
- Lesson join: normalized LuL triad (exact match only)
- Unmatched rows are reported, never dropped. No silent fallbacks.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional, Union

import pandas as pd

from content_workspace.id_resolver.column_mapper import (
    EXPANDED,
    FILE_LABELS,
    LESSONS,
    LIBRARY,
    ColumnMapping,
    find_missing_columns,
    get_unmapped_slots,
    suggest_mapping,
)
from content_workspace.id_resolver.matcher import (
    COMPETENCY_KEY_DELIMITER,
    DEFAULT_DUPLICATE_POLICY,
    KeyConflict,
    MatchResult,
    MatchStats,
    create_competency_key,
    resolve_ids,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RESOLVED_FILENAME: str = "id_resolved.csv"
ERROR_REPORT_FILENAME: str = "id_resolver_errors.csv"

EXCEL_SUFFIXES: tuple[str, ...] = (".xlsx", ".xls")

DERIVED_COLUMNS: list[str] = [
    "competency_id",
    "lesson_id",
    "competency_match_found",
    "lesson_match_found",
]

BLANK_COMPETENCY_KEY: str = COMPETENCY_KEY_DELIMITER * 2

COMPETENCY_UNMATCHED: str = "competency_unmatched"
LESSON_UNMATCHED: str = "lesson_unmatched"

_INVISIBLE_CHARS = "[\u200b\u200c\u200d\ufeff]"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class IngestionError(Exception):
    """Structured halt raised before any matching happens."""
    reason: str
    affected_file: str
    missing_or_invalid_fields: list[str]
    operator_fix_steps: list[str]

    def __str__(self) -> str:
        lines = [
            "═" * 60,
            "ID RESOLVER HALT",
            "═" * 60,
            f"Reason          : {self.reason}",
            f"Affected File   : {self.affected_file}",
        ]
        if self.missing_or_invalid_fields:
            lines.append(f"Missing/Invalid : {', '.join(self.missing_or_invalid_fields)}")
        lines.append("Fix Steps:")
        for i, step in enumerate(self.operator_fix_steps, 1):
            lines.append(f"  {i}. {step}")
        lines.append("═" * 60)
        return "\n".join(lines)


@dataclass
class ResolutionReport:
    """
    Produced after matching. Surfaces every miss and flag for triage.
    """
    timestamp: str
    expanded_file: str
    library_file: str
    lesson_file: str
    expanded_row_count: int
    library_row_count: int
    lesson_row_count: int
    mapping: dict[str, str]
    stats: MatchStats
    duplicate_policy: str
    conflicts: list[KeyConflict] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return (
            self.stats.competency_misses > 0
            or self.stats.lesson_misses > 0
            or bool(self.conflicts)
        )

    def as_text(self) -> str:
        stats = self.stats
        lines = [
            "═" * 60,
            "ID RESOLVER PROCESSING REPORT",
            "═" * 60,
            f"Generated       : {self.timestamp}",
            "",
            "FILES",
            f"  Expanded Rows : {self.expanded_file} ({self.expanded_row_count} rows)",
            f"  Full Library  : {self.library_file} ({self.library_row_count} rows)",
            f"  Lessons       : {self.lesson_file} ({self.lesson_row_count} rows)",
            "",
            "COMPETENCY MATCHING",
            f"  Matched       : {stats.competency_matches}",
            f"  Unmatched     : {stats.competency_misses}",
            "",
            "LESSON MATCHING",
            f"  Matched       : {stats.lesson_matches}",
            f"  Unmatched     : {stats.lesson_misses}",
            "",
            f"TOTAL ROWS      : {stats.total_rows}",
            f"DUPLICATE KEYS  : {self.duplicate_policy}",
            "",
            "COLUMN MAPPING",
        ]
        for slot, column in self.mapping.items():
            lines.append(f"  {slot} → '{column}'")
        if self.conflicts:
            lines += ["", "KEY CONFLICTS (resolved as misses)"]
            for conflict in self.conflicts:
                lines.append(
                    f"  [{conflict.index}] '{conflict.key}' → {', '.join(conflict.ids)}"
                )
        if self.flags:
            lines += ["", "FLAGS (all surfaced)"]
            for flag in self.flags:
                lines.append(f"  ⚑ {flag}")
        lines.append("═" * 60)
        return "\n".join(lines)


@dataclass
class ResolutionRun:
    result: MatchResult
    data: pd.DataFrame
    report: ResolutionReport


# ---------------------------------------------------------------------------
# Internal utilities
# ---------------------------------------------------------------------------


def _source_name(source) -> str:
    if isinstance(source, (str, Path)):
        return Path(source).name
    return getattr(source, "name", "<upload>")


def _clean_headers(df: pd.DataFrame, file_label: str, name: str) -> tuple[pd.DataFrame, list[str]]:
    """
    Strip BOM / zero-width characters and outer whitespace from headers.

    Cell values are left untouched: they are carried into the output rows
    exactly as loaded. Returns the frame and a log of renamed headers.

    Raises IngestionError when two headers clean to the same name, since
    the row dicts could then keep only one of the two cells.
    """
    log: list[str] = []
    cleaned = (
        pd.Index(df.columns.astype(str))
        .str.replace(_INVISIBLE_CHARS, "", regex=True)
        .str.strip()
    )

    sources: dict[str, list[str]] = {}
    for raw, new in zip(df.columns, cleaned):
        sources.setdefault(new, []).append(str(raw))
    collisions = {new: raws for new, raws in sources.items() if len(raws) > 1}
    if collisions:
        raise IngestionError(
            reason=f"{file_label} file has headers that collide after cleaning",
            affected_file=name,
            missing_or_invalid_fields=[
                f"'{new}' <- " + ", ".join(repr(r) for r in raws)
                for new, raws in collisions.items()
            ],
            operator_fix_steps=[
                "Rename or remove the duplicate columns listed above.",
                "Headers are compared after trimming spaces and invisible characters.",
            ],
        )

    renames = {
        raw: new for raw, new in zip(df.columns, cleaned) if raw != new
    }
    if renames:
        df = df.rename(columns=renames)
        for raw, new in renames.items():
            log.append(f"{file_label}: header {raw!r} cleaned to '{new}'")
    return df, log


def _blank_competency_rows(rows: list[dict[str, str]], can_do: str, cefr: str, skill: str) -> int:
    return sum(
        1 for row in rows
        if create_competency_key(row.get(can_do), row.get(cefr), row.get(skill))
        == BLANK_COMPETENCY_KEY
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_rows(source, file_label: str) -> pd.DataFrame:
    """
    Load one input file with every cell as text.

    Parameters
    ----------
    source : str, Path or file-like
        CSV path, Excel path, or an uploaded file object with a ``name``.
    file_label : str
        Human-readable label used in errors and log messages.

    Raises
    ------
    IngestionError
        When the file is missing or cannot be parsed.
    """
    name = _source_name(source)
    if isinstance(source, (str, Path)) and not Path(source).exists():
        raise IngestionError(
            reason=f"{file_label} file not found",
            affected_file=str(source),
            missing_or_invalid_fields=[],
            operator_fix_steps=[
                f"Verify the path is correct: {source}",
                "Ensure the file has been uploaded before resolving IDs.",
            ],
        )

    try:
        if name.lower().endswith(EXCEL_SUFFIXES):
            df = pd.read_excel(source, dtype=str, keep_default_na=False)
        else:
            df = pd.read_csv(
                source,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                encoding="utf-8-sig",
            )
    except Exception as e:
        raise IngestionError(
            reason=f"{file_label} file is not parseable",
            affected_file=name,
            missing_or_invalid_fields=[],
            operator_fix_steps=[
                "Verify the file is a valid CSV or Excel workbook.",
                f"Parse error: {e}",
            ],
        ) from e

    df, header_log = _clean_headers(df, file_label, name)
    for entry in header_log:
        logger.info("[ingestion] %s", entry)
    df.attrs["header_log"] = header_log
    logger.info("[ingestion] %s: loaded %d rows from %s", file_label, len(df), name)
    return df


def frame_to_rows(df: pd.DataFrame) -> list[dict[str, str]]:
    """DataFrame → list of plain row dicts in file order."""
    return df.to_dict(orient="records")


# ---------------------------------------------------------------------------
# Mapping validation
# ---------------------------------------------------------------------------


def build_mapping(
    columns_by_file: Mapping[str, list[str]],
    overrides: Optional[Mapping[str, str]] = None,
) -> ColumnMapping:
    """
    Suggested mapping, with operator overrides taking precedence per slot.
    """
    values = suggest_mapping(
        columns_by_file.get(EXPANDED, []),
        columns_by_file.get(LIBRARY, []),
        columns_by_file.get(LESSONS, []),
    )
    if overrides:
        values.update({slot: col for slot, col in overrides.items() if col})
    return ColumnMapping.from_dict(values)


def validate_mapping(
    mapping: Union[ColumnMapping, Mapping[str, str]],
    columns_by_file: Mapping[str, list[str]],
) -> None:
    """Halt unless every slot names a column that exists in its file."""
    unmapped = get_unmapped_slots(mapping)
    if unmapped:
        raise IngestionError(
            reason="Column mapping incomplete",
            affected_file="Column Mapping",
            missing_or_invalid_fields=unmapped,
            operator_fix_steps=[
                f"Map all required columns: {', '.join(unmapped)}",
                "Pick the source column for each slot in the Column Mapping settings.",
            ],
        )

    missing = find_missing_columns(mapping, columns_by_file)
    if missing:
        values = mapping.as_dict() if isinstance(mapping, ColumnMapping) else mapping
        raise IngestionError(
            reason="Mapped columns not found in uploaded files",
            affected_file="Column Mapping",
            missing_or_invalid_fields=[f"{slot}='{values[slot]}'" for slot in missing],
            operator_fix_steps=[
                "Check the header row of each file for typos or renamed columns.",
                "Re-select the column for each listed slot.",
            ],
        )


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


def matched_frame(result: MatchResult) -> pd.DataFrame:
    """All resolved rows, input columns in file order followed by the derived columns."""
    df = pd.DataFrame(result.matched)
    if df.empty:
        return pd.DataFrame(columns=DERIVED_COLUMNS)
    original = [c for c in df.columns if c not in DERIVED_COLUMNS]
    return df[original + DERIVED_COLUMNS]


def _error_type(competency_found: bool, lesson_found: bool) -> str:
    reasons = []
    if not competency_found:
        reasons.append(COMPETENCY_UNMATCHED)
    if not lesson_found:
        reasons.append(LESSON_UNMATCHED)
    return "; ".join(reasons)


def error_frame(result: MatchResult) -> pd.DataFrame:
    """
    Rows where the competency or lesson lookup missed, for manual review.

    An ``error_type`` column names which lookup missed; a row that missed
    both carries both labels.
    """
    df = matched_frame(result)
    if df.empty:
        return pd.DataFrame(columns=DERIVED_COLUMNS + ["error_type"])
    mask = ~(df["competency_match_found"].astype(bool) & df["lesson_match_found"].astype(bool))
    errors = df[mask].reset_index(drop=True)
    errors["error_type"] = [
        _error_type(bool(comp), bool(lesson))
        for comp, lesson in zip(errors["competency_match_found"], errors["lesson_match_found"])
    ]
    return errors


def to_csv_bytes(df: pd.DataFrame) -> bytes:
    """CSV with a UTF-8 BOM so spreadsheet apps keep smart quotes intact."""
    buffer = io.StringIO()
    df.to_csv(buffer, index=False)
    return buffer.getvalue().encode("utf-8-sig")


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def run_resolution(
    expanded_source,
    library_source,
    lesson_source,
    mapping: Optional[Union[ColumnMapping, Mapping[str, str]]] = None,
    duplicate_policy: str = DEFAULT_DUPLICATE_POLICY,
) -> ResolutionRun:
    """
    Load the three inputs, confirm the mapping and resolve IDs.

    Parameters
    ----------
    expanded_source, library_source, lesson_source : str, Path or file-like
        The Expanded Rows, Full Library and Lessons files.
    mapping : ColumnMapping or dict, optional
        Operator-confirmed mapping. Blank or absent slots are filled from
        the header alias library. If None, the suggested mapping is used
        as is.
    duplicate_policy : str
        Passed through to resolve_ids().

    Raises
    ------
    IngestionError
        On unreadable files or an incomplete / invalid mapping.
    """
    flags: list[str] = []
    timestamp = datetime.now().isoformat(timespec="seconds")

    frames = {
        EXPANDED: load_rows(expanded_source, FILE_LABELS[EXPANDED]),
        LIBRARY: load_rows(library_source, FILE_LABELS[LIBRARY]),
        LESSONS: load_rows(lesson_source, FILE_LABELS[LESSONS]),
    }
    for df in frames.values():
        flags.extend(df.attrs.get("header_log", []))

    columns_by_file = {kind: list(df.columns) for kind, df in frames.items()}
    if isinstance(mapping, ColumnMapping):
        mapping = mapping.as_dict()
    resolved_mapping = build_mapping(columns_by_file, mapping)
    validate_mapping(resolved_mapping, columns_by_file)

    expanded_rows = frame_to_rows(frames[EXPANDED])
    library_rows = frame_to_rows(frames[LIBRARY])
    lesson_rows = frame_to_rows(frames[LESSONS])

    result = resolve_ids(
        expanded_rows,
        library_rows,
        lesson_rows,
        resolved_mapping,
        duplicate_policy=duplicate_policy,
    )
    stats = result.stats
    match_flags: list[str] = []

    shadowed = [c for c in DERIVED_COLUMNS if c in columns_by_file[EXPANDED]]
    if shadowed:
        match_flags.append(
            f"{FILE_LABELS[EXPANDED]}: input column(s) {', '.join(shadowed)} were "
            "overwritten by the resolved values."
        )

    if stats.competency_misses:
        match_flags.append(
            f"{stats.competency_misses} of {stats.total_rows} rows have no competency match. "
            "Download the error report to review them."
        )
    if stats.lesson_misses:
        match_flags.append(
            f"{stats.lesson_misses} of {stats.total_rows} rows have no lesson match. "
            "Download the error report to review them."
        )

    blank_expanded = _blank_competency_rows(
        expanded_rows,
        resolved_mapping.can_do_column,
        resolved_mapping.cefr_column,
        resolved_mapping.skill_column,
    )
    blank_library = _blank_competency_rows(
        library_rows,
        resolved_mapping.library_can_do_column,
        resolved_mapping.library_cefr_column,
        resolved_mapping.library_skill_column,
    )
    if blank_expanded and blank_library:
        match_flags.append(
            f"{blank_expanded} expanded rows and {blank_library} library rows have blank "
            "can-do, CEFR and skill. Those expanded rows match the blank library row; "
            "verify them manually."
        )

    if result.conflicts:
        match_flags.append(
            f"{len(result.conflicts)} keys are claimed by more than one ID and were left unmatched."
        )

    for flag in match_flags:
        logger.warning("[ingestion] %s", flag)
    flags.extend(match_flags)

    report = ResolutionReport(
        timestamp=timestamp,
        expanded_file=_source_name(expanded_source),
        library_file=_source_name(library_source),
        lesson_file=_source_name(lesson_source),
        expanded_row_count=len(expanded_rows),
        library_row_count=len(library_rows),
        lesson_row_count=len(lesson_rows),
        mapping=resolved_mapping.as_dict(),
        stats=stats,
        duplicate_policy=duplicate_policy,
        conflicts=result.conflicts,
        flags=flags,
    )

    return ResolutionRun(result=result, data=matched_frame(result), report=report)


# ---------------------------------------------------------------------------
# CLI / direct execution
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import sys

    if len(sys.argv) not in (4, 5):
        print(
            "Usage: python -m content_workspace.id_resolver.ingestion "
            "<expanded_csv> <library_csv> <lessons_csv> [output_dir]"
        )
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    try:
        run = run_resolution(sys.argv[1], sys.argv[2], sys.argv[3])
    except IngestionError as e:
        print(str(e))
        sys.exit(2)

    print(run.report.as_text())
    if len(sys.argv) == 5:
        out_dir = Path(sys.argv[4])
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / RESOLVED_FILENAME).write_bytes(to_csv_bytes(run.data))
        (out_dir / ERROR_REPORT_FILENAME).write_bytes(to_csv_bytes(error_frame(run.result)))
        print(f"\nWrote {RESOLVED_FILENAME} and {ERROR_REPORT_FILENAME} to {out_dir}")
