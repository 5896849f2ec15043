"""
Review workflow: sending rows for review and acting on per-language cells.

Approve and reject marks are buffered locally and persisted together by
``save_changes``. Reassigning a reviewer is written immediately.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from wordflow.audit import AuditAction, AuditLog
from wordflow.document_store import parse_rows_path
from wordflow.errors import PermissionDeniedError, StoreError
from wordflow.glossary import GlossaryLibrary
from wordflow.models import (
    GlossaryTerm,
    Row,
    TranslationCell,
    User,
    STATUS_APPROVED,
    STATUS_CHANGES,
    STATUS_DRAFT,
    STATUS_REVIEW,
    now_iso,
)
from wordflow.notifications import Notifier
from wordflow.permissions import Action, require
from wordflow.row_store import RowStore
from wordflow.status_engine import apply_row_update, is_assigned_to_other, is_visible_to_manager

logger = logging.getLogger(__name__)

DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"
DECISIONS = (DECISION_APPROVED, DECISION_REJECTED)


@dataclass
class ReviewItem:
    project_id: str
    project_name: str
    page_id: str
    page_name: str
    target_languages: List[str]
    row: Row


@dataclass
class CellView:
    visible: bool
    actionable: bool
    assigned_to_other: bool
    pending_decision: Optional[str]
    cell: TranslationCell = field(default_factory=TranslationCell)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def is_row_new(row: Row, last_viewed: Optional[str]) -> bool:
    """An approved row is new if it was approved after the page was last viewed."""
    if row.status != STATUS_APPROVED or not row.approved_at:
        return False
    viewed = _parse_timestamp(last_viewed)
    if viewed is None:
        return True
    approved = _parse_timestamp(row.approved_at)
    return approved is not None and approved > viewed


def new_approval_count(rows: List[Row], last_viewed: Optional[str]) -> int:
    if _parse_timestamp(last_viewed) is None:
        return sum(1 for row in rows if row.status == STATUS_APPROVED)
    return sum(1 for row in rows if is_row_new(row, last_viewed))


class ApprovalWorkflow:
    def __init__(self, row_store: RowStore, glossary: GlossaryLibrary, notifier: Notifier,
                 audit: Optional[AuditLog] = None, user: Optional[User] = None):
        self.row_store = row_store
        self.glossary = glossary
        self.notifier = notifier
        self.audit = audit
        self.user = user

        self._decisions: Dict[str, Dict[str, str]] = {}
        self._remarks: Dict[str, Dict[str, str]] = {}
        self._row_projects: Dict[str, str] = {}
        self._glossary_decisions: Dict[str, Dict[str, str]] = {}

    # ------------------------------------------------------------------
    # Sending for review
    # ------------------------------------------------------------------

    def _review_candidates(self, project_id: str, row_ids: Optional[List[str]]) -> List[Row]:
        if row_ids is None:
            row_ids = self.row_store.selected_row_ids(project_id)
        if row_ids:
            return [row for row in (self.row_store.get_row(project_id, rid) for rid in row_ids) if row]
        rows = self.row_store.all_rows(project_id)
        candidates = [row for row in rows if row.status in (STATUS_DRAFT, STATUS_CHANGES)]
        return candidates or [row for row in rows if row.status != STATUS_APPROVED]

    async def send_for_review(self, project_id: str, row_ids: Optional[List[str]] = None,
                              assignments: Optional[Dict[str, str]] = None) -> Tuple[int, int]:
        """
        Move rows into review.

        Every target cell that is not yet approved becomes ``review``; when
        ``assignments`` names a manager for a language, that cell is assigned
        to them. Without ``row_ids`` the current selection is used, or else
        every draft and changes row of the project, or failing that every row
        not yet approved.

        Returns:
            Tuple[int, int]: Rows sent and rows that failed to save.
        """
        require(self.user, Action.EDIT_PROJECT)
        project = self.row_store.get_project(project_id)
        if project is None:
            self.notifier.error("Project not found.")
            return 0, 0

        rows = self._review_candidates(project_id, row_ids)
        if not rows:
            self.notifier.info("No rows to send for review.")
            return 0, 0

        assigned_at = now_iso()
        sent = failed = 0
        for row in rows:
            cells = {}
            for lang in project.target_languages:
                if row.cell(lang).status == STATUS_APPROVED:
                    continue
                cell = {"status": STATUS_REVIEW}
                manager_id = (assignments or {}).get(lang)
                if manager_id:
                    cell.update({"assigned_manager_id": manager_id, "assigned_at": assigned_at})
                cells[lang] = cell
            if not cells:
                logger.debug("Row %s has every target cell approved; not sending it", row.id)
                continue
            updates = {"translations": cells}
            if await self.row_store.update_row(project_id, row.id, updates, notify=False,
                                               audit_action=AuditAction.SENT_FOR_REVIEW):
                sent += 1
            else:
                failed += 1

        self.row_store.clear_selection(project_id)
        if not sent and not failed:
            self.notifier.info("No rows to send for review.")
        elif failed:
            self.notifier.error(f"Sent {sent} row(s) for review; {failed} failed.")
        else:
            self.notifier.success(f"Sent {sent} row(s) for review.")
        return sent, failed

    # ------------------------------------------------------------------
    # Review list
    # ------------------------------------------------------------------

    def collect_review_rows(self) -> List[ReviewItem]:
        """Every cached row in review, across all projects, paged and flat alike."""
        items = []
        for project in self.row_store.list_projects():
            for page in self.row_store.get_pages(project.id):
                for row in self.row_store.get_page_rows(project.id, page.id):
                    if row.status == STATUS_REVIEW:
                        items.append(ReviewItem(project.id, project.name, page.id, page.name,
                                                list(project.target_languages), row))
            for row in self.row_store.get_legacy_rows(project.id):
                if row.status == STATUS_REVIEW:
                    items.append(ReviewItem(project.id, project.name, "", "—",
                                            list(project.target_languages), row))
        for item in items:
            self._row_projects[item.row.id] = item.project_id
        return items

    async def fetch_review_rows(self) -> List[ReviewItem]:
        """
        Find rows in review with a collection-group query and make sure their
        projects are cached before listing them.
        """
        try:
            hits = await self.row_store.store.query_group("rows", [("status", "==", STATUS_REVIEW)])
        except StoreError as e:
            logger.error("Failed to query rows in review: %s", e)
            self.notifier.error("Could not load rows waiting for review.")
            return self.collect_review_rows()

        row_ids: Dict[str, List[str]] = {}
        for path, doc in hits:
            try:
                project_id, _page_id = parse_rows_path(path)
            except ValueError:
                logger.debug("Skipping rows collection outside projects: %s", path)
                continue
            row_ids.setdefault(project_id, []).append(doc["id"])

        for project_id, ids in row_ids.items():
            stale = self.row_store.get_project(project_id) is None or \
                any(self.row_store.find_row(project_id, row_id) is None for row_id in ids)
            if stale:
                await self.row_store.load_project(project_id)
        return self.collect_review_rows()

    def _manager(self, manager: Optional[User]) -> User:
        manager = manager or self.user
        if manager is None:
            raise ValueError("A reviewing user is required.")
        return manager

    def visible_items(self, manager: Optional[User] = None) -> List[ReviewItem]:
        manager = self._manager(manager)
        return [item for item in self.collect_review_rows()
                if any(is_visible_to_manager(item.row, lang, manager) for lang in item.target_languages)]

    def cell_view(self, item: ReviewItem, lang: str, manager: Optional[User] = None) -> CellView:
        manager = self._manager(manager)
        actionable = is_visible_to_manager(item.row, lang, manager)
        assigned_to_other = is_assigned_to_other(item.row, lang, manager)
        return CellView(
            visible=actionable,
            actionable=actionable,
            assigned_to_other=assigned_to_other,
            pending_decision=self._decisions.get(item.row.id, {}).get(lang),
            cell=item.row.cell(lang),
        )

    def hidden_languages(self, item: ReviewItem, manager: Optional[User] = None) -> List[str]:
        """Languages of the row held back because another manager owns them."""
        manager = self._manager(manager)
        return [lang for lang in item.target_languages
                if not is_visible_to_manager(item.row, lang, manager)
                and is_assigned_to_other(item.row, lang, manager)
                and item.row.cell(lang).status not in (STATUS_APPROVED, STATUS_CHANGES)]

    def review_languages(self, manager: Optional[User] = None) -> List[str]:
        manager = self._manager(manager)
        languages: List[str] = []
        for item in self.visible_items(manager):
            for lang in item.target_languages:
                if lang not in languages and is_visible_to_manager(item.row, lang, manager):
                    languages.append(lang)
        return languages

    # ------------------------------------------------------------------
    # Pending decisions
    # ------------------------------------------------------------------

    def _require_cell(self, row: Row, lang: str, action: Action) -> None:
        if not is_visible_to_manager(row, lang, self.user):
            raise PermissionDeniedError(self.user.role, f"{action.value} on '{lang}' of row {row.id}")

    def mark(self, project_id: str, row_id: str, lang: str, decision: str) -> None:
        """
        Buffer a decision for one cell.

        The cell must be actionable for the current user: pending, in one of
        their languages and not assigned to another manager. Rows that are not
        cached yet are checked again when the buffer is saved.
        """
        if decision not in DECISIONS:
            raise ValueError(f"Unknown review decision '{decision}'")
        action = Action.APPROVE_TRANSLATION if decision == DECISION_APPROVED else Action.REJECT_TRANSLATION
        require(self.user, action)
        row = self.row_store.get_row(project_id, row_id)
        if row is not None:
            self._require_cell(row, lang, action)
        self._decisions.setdefault(row_id, {})[lang] = decision
        self._row_projects[row_id] = project_id

    def undo(self, row_id: str, lang: str) -> None:
        langs = self._decisions.get(row_id, {})
        langs.pop(lang, None)
        if not langs:
            self._decisions.pop(row_id, None)
        remarks = self._remarks.get(row_id, {})
        remarks.pop(lang, None)
        if not remarks:
            self._remarks.pop(row_id, None)

    def set_remark(self, project_id: str, row_id: str, lang: str, text: str) -> None:
        self._remarks.setdefault(row_id, {})[lang] = text
        self._row_projects[row_id] = project_id

    def pending_count(self) -> int:
        return sum(len(langs) for langs in self._decisions.values())

    def pending_decisions(self) -> Dict[str, Dict[str, str]]:
        return {row_id: dict(langs) for row_id, langs in self._decisions.items()}

    def discard_all(self) -> None:
        self._decisions.clear()
        self._remarks.clear()

    async def save_changes(self) -> Tuple[int, int]:
        """
        Persist every buffered decision.

        Approved cells become ``approved`` and lose their remark; rejected
        cells become ``changes`` and keep the remark entered for them. The row
        status is recomputed from its cells. Rows that fail to save keep their
        pending marks. Decisions on cells the current user can no longer act
        on, for example after a reassignment, are dropped.

        Returns:
            Tuple[int, int]: Rows saved and rows that failed.
        """
        if not self._decisions:
            self.notifier.error("No items marked for approval or rejection")
            return 0, 0

        manager = self._manager(None)
        saved = failed = denied = 0
        affected_projects = set()
        for row_id, langs in list(self._decisions.items()):
            project_id = self._row_projects.get(row_id)
            row = self.row_store.get_row(project_id, row_id) if project_id else None
            if row is None and project_id:
                await self.row_store.load_project(project_id)
                row = self.row_store.get_row(project_id, row_id)
            if row is None:
                logger.warning("Row %s marked for review no longer exists", row_id)
                failed += 1
                continue

            for lang in [lang for lang in langs if not is_visible_to_manager(row, lang, manager)]:
                logger.warning("Dropping decision on '%s' of row %s: not actionable for %s",
                               lang, row_id, manager.email)
                self.undo(row_id, lang)
                denied += 1
            langs = self._decisions.get(row_id)
            if not langs:
                continue

            remarks = self._remarks.get(row_id, {})
            cells = {}
            for lang, decision in langs.items():
                if decision == DECISION_APPROVED:
                    cells[lang] = {"status": STATUS_APPROVED, "remark": ""}
                else:
                    cells[lang] = {"status": STATUS_CHANGES, "remark": remarks.get(lang, row.cell(lang).remark)}
            updates = {"translations": cells}
            if apply_row_update(row, updates).status == STATUS_APPROVED:
                updates["approved_at"] = now_iso()

            action = AuditAction.REJECTED if DECISION_REJECTED in langs.values() else AuditAction.APPROVED
            if await self.row_store.update_row(project_id, row_id, updates, notify=False, audit_action=action):
                saved += 1
                affected_projects.add(project_id)
                self._decisions.pop(row_id, None)
                self._remarks.pop(row_id, None)
            else:
                failed += 1

        for project_id in affected_projects:
            await self.row_store.recompute_project_stats(project_id)

        if failed:
            message = f"Saved {saved} row(s); {failed} failed and are still pending."
        elif denied:
            message = f"Saved {saved} row(s)."
        else:
            message = "Changes saved successfully"
        if denied:
            message += f" {denied} decision(s) on cells you cannot review were dropped."
        if failed or denied:
            self.notifier.error(message)
        else:
            self.notifier.success(message)
        return saved, failed

    async def reassign(self, project_id: str, row_id: str, lang: str, manager_id: Optional[str]) -> bool:
        """Assign one cell to another manager; persisted immediately."""
        require(self.user, Action.ASSIGN_REVIEWER)
        updates = {"translations": {lang: {"assigned_manager_id": manager_id,
                                           "assigned_at": now_iso() if manager_id else None}}}
        ok = await self.row_store.update_row(project_id, row_id, updates, audit_action=AuditAction.REASSIGNED)
        if ok:
            self.notifier.success("Reviewer reassigned.")
        return ok

    # ------------------------------------------------------------------
    # Glossary review
    # ------------------------------------------------------------------

    async def glossary_review_items(self) -> List[GlossaryTerm]:
        return await self.glossary.list_terms(STATUS_REVIEW)

    def mark_glossary(self, term_id: str, lang: str, decision: str) -> None:
        if decision not in DECISIONS:
            raise ValueError(f"Unknown review decision '{decision}'")
        require(self.user, Action.APPROVE_TRANSLATION if decision == DECISION_APPROVED
                else Action.REJECT_TRANSLATION)
        self._glossary_decisions.setdefault(term_id, {})[lang] = decision

    async def save_glossary_decisions(self) -> Tuple[int, int]:
        """A term with any rejection goes back to draft; otherwise any approval approves it."""
        if not self._glossary_decisions:
            self.notifier.error("No items marked for approval or rejection")
            return 0, 0
        saved = failed = 0
        for term_id, langs in list(self._glossary_decisions.items()):
            decisions = set(langs.values())
            status = STATUS_DRAFT if DECISION_REJECTED in decisions else STATUS_APPROVED
            if await self.glossary.update_term(term_id, {"status": status}) is not None:
                saved += 1
                self._glossary_decisions.pop(term_id, None)
            else:
                failed += 1
        if failed:
            self.notifier.error(f"Updated {saved} glossary term(s); {failed} failed.")
        else:
            self.notifier.success("Glossary terms updated")
        return saved, failed
