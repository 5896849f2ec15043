"""
Pure status and assignment rules.

Nothing in this module touches the store; every function derives its answer
from the row data it is given.
"""
import math
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from wordflow.models import (
    Row,
    TranslationCell,
    User,
    STATUS_APPROVED,
    STATUS_CHANGES,
    STATUS_DRAFT,
    STATUS_REVIEW,
    normalize_status,
)
from wordflow.permissions import ROLE_ADMIN, Action, can_do

PENDING_EXCLUDED = (STATUS_APPROVED, STATUS_CHANGES)
CELL_FIELDS = ("text", "status", "remark", "assigned_manager_id", "assigned_at")
ROW_SCALAR_FIELDS = ("prompt_id", "order", "context", "translated_at", "template_used", "approved_at")


def _cell_status(cell: Any) -> str:
    if isinstance(cell, TranslationCell):
        return cell.status
    if isinstance(cell, Mapping):
        return normalize_status(cell.get("status"))
    return STATUS_DRAFT


def compute_row_status(translations: Mapping[str, Any],
                       target_languages: Optional[Iterable[str]] = None) -> str:
    """
    Derive a row's aggregate status from its per-language cells.

    Precedence: every cell approved > any cell in changes > any cell in
    review > draft. A row with one approved and one review cell is ``review``.

    Args:
        translations: Mapping of language code to cell (TranslationCell or document dict).
        target_languages: Languages that must be present; missing ones count as draft.

    Returns:
        str: One of draft, review, approved, changes.
    """
    if target_languages is not None:
        statuses = [_cell_status(translations[lang]) if lang in translations else STATUS_DRAFT
                    for lang in target_languages]
    else:
        statuses = [_cell_status(cell) for cell in translations.values()]

    if not statuses:
        return STATUS_DRAFT
    if all(status == STATUS_APPROVED for status in statuses):
        return STATUS_APPROVED
    if any(status == STATUS_CHANGES for status in statuses):
        return STATUS_CHANGES
    if any(status == STATUS_REVIEW for status in statuses):
        return STATUS_REVIEW
    return STATUS_DRAFT


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_project_progress(rows: List[Row]) -> int:
    if not rows:
        return 0
    approved = sum(1 for row in rows if row.status == STATUS_APPROVED)
    return _round_half_up(approved / len(rows) * 100)


def compute_project_status(rows: List[Row]) -> str:
    if any(row.status == STATUS_REVIEW for row in rows):
        return STATUS_REVIEW
    if rows and all(row.status == STATUS_APPROVED for row in rows):
        return STATUS_APPROVED
    return STATUS_DRAFT


def project_stats(rows: List[Row]) -> Dict[str, Any]:
    """Derived project counters, keyed by Project attribute names."""
    return {
        "progress": compute_project_progress(rows),
        "total_rows": len(rows),
        "translated_rows": sum(1 for row in rows if row.status == STATUS_APPROVED),
        "pending_review": sum(1 for row in rows if row.status == STATUS_REVIEW),
        "status": compute_project_status(rows),
    }


def is_visible_to_manager(row: Row, lang: str, manager: User) -> bool:
    """
    Whether ``manager`` may act on the ``lang`` cell of ``row``.

    Evaluated per cell because the languages of one row can be assigned to
    different managers. Admins skip the language and assignment checks but
    still only see cells that are pending action. A manager with an empty
    language list is unrestricted.
    """
    cell = row.translations.get(lang)
    if cell is None or cell.status in PENDING_EXCLUDED:
        return False
    if manager.role == ROLE_ADMIN:
        return True
    if not can_do(manager.role, Action.APPROVE_TRANSLATION):
        return False
    if manager.languages and lang not in manager.languages:
        return False
    if cell.assigned_manager_id and cell.assigned_manager_id != manager.id:
        return False
    return True


def is_assigned_to_other(row: Row, lang: str, manager: User) -> bool:
    """Badge helper; admins see the badge too even though they may act on the cell."""
    cell = row.translations.get(lang)
    return bool(cell and cell.assigned_manager_id and cell.assigned_manager_id != manager.id)


def _cell_updates(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, TranslationCell):
        return asdict(raw)
    return {key: value for key, value in dict(raw or {}).items() if key in CELL_FIELDS}


def apply_row_update(row: Row, updates: Mapping[str, Any]) -> Row:
    """
    Return a copy of ``row`` with ``updates`` merged in.

    ``updates`` uses row attribute names. ``translations`` maps a language to
    the cell fields to change; sibling languages and untouched fields are kept.

    Content edits revert review state: a changed source text puts every cell
    back to draft, and a changed cell text puts that cell back to draft,
    unless the same update sets that cell's status. The row status comes from
    ``updates["status"]`` when present and is otherwise recomputed.
    """
    updated = row.copy()
    cell_updates = {lang: _cell_updates(raw) for lang, raw in (updates.get("translations") or {}).items()}

    source_changed = "source_text" in updates and (updates["source_text"] or "") != row.source_text
    if "source_text" in updates:
        updated.source_text = updates["source_text"] or ""

    for name in ROW_SCALAR_FIELDS:
        if name in updates:
            setattr(updated, name, updates[name])

    for lang, fields in cell_updates.items():
        cell = updated.translations.get(lang) or TranslationCell()
        text_changed = "text" in fields and (fields["text"] or "") != cell.text
        for name, value in fields.items():
            if name == "status":
                value = normalize_status(value)
            elif name in ("text", "remark"):
                value = value or ""
            setattr(cell, name, value)
        if text_changed and "status" not in fields:
            cell.status = STATUS_DRAFT
        updated.translations[lang] = cell

    if source_changed:
        for lang, cell in updated.translations.items():
            if "status" not in cell_updates.get(lang, {}):
                cell.status = STATUS_DRAFT

    if "status" in updates and updates["status"]:
        updated.status = normalize_status(updates["status"])
    elif cell_updates or source_changed:
        updated.status = compute_row_status(updated.translations)

    if updated.status != STATUS_APPROVED and "approved_at" not in updates:
        updated.approved_at = None

    return updated


def row_update_fields(before: Row, after: Row) -> Dict[str, Any]:
    """
    Field-level diff between two versions of a row, as dotted store keys.

    Cell changes are addressed as ``translations.<lang>.<field>`` so that a
    write for one language never overwrites a sibling language.
    """
    old_doc = before.to_document()
    new_doc = after.to_document()
    fields: Dict[str, Any] = {}

    old_cells = old_doc.pop("translations", {})
    new_cells = new_doc.pop("translations", {})
    for lang, cell_doc in new_cells.items():
        previous = old_cells.get(lang)
        if previous is None:
            fields[f"translations.{lang}"] = cell_doc
            continue
        for name, value in cell_doc.items():
            if previous.get(name) != value:
                fields[f"translations.{lang}.{name}"] = value

    for key, value in new_doc.items():
        if key not in old_doc or old_doc[key] != value:
            fields[key] = value
    return fields


def empty_languages(row: Row, target_languages: Iterable[str]) -> List[str]:
    return [lang for lang in target_languages if row.cell(lang).is_empty]


def row_needs_translation(row: Row, target_languages: Iterable[str]) -> bool:
    return bool(empty_languages(row, target_languages))
