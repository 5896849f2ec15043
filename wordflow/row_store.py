"""
In-memory row cache synchronized with the document store.

The cache is the source of truth for the session. Mutations are applied to it
first and then written remotely; a failed remote write is logged and reported
but never rolled back, so local and remote state may differ until the next
full reload replaces the cache.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from wordflow.audit import AuditAction, AuditLog
from wordflow.document_store import (
    PROJECTS,
    DocumentStore,
    chunked,
    legacy_rows_path,
    new_document_id,
    page_rows_path,
    pages_path,
    rows_path,
)
from wordflow.errors import DuplicateRowError, RowValidationError, StoreError
from wordflow.models import (
    Page,
    Project,
    Row,
    TranslationCell,
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_REVIEW,
    normalize_status,
    now_iso,
)
from wordflow.notifications import Notifier
from wordflow.status_engine import apply_row_update, compute_row_status, project_stats, row_update_fields

logger = logging.getLogger(__name__)

DEFAULT_WRITE_CHUNK_SIZE = 400
DEFAULT_PAGE_NAME = "Page 1"

PROJECT_FIELD_MAP = {
    "name": "name",
    "description": "description",
    "target_languages": "targetLanguages",
    "source_language": "sourceLanguage",
    "theme": "theme",
    "status": "status",
    "owner_id": "ownerId",
}

RowLocation = Tuple[str, int, Row]


def _normalize_key(text: Optional[str]) -> str:
    return (text or "").strip().lower()


class RowStore:
    """
    Cache of projects, pages and rows keyed by project id and page id.

    Rows of paged projects live in ``page_rows[project_id][page_id]``; rows of
    projects still on the flat layout live in ``legacy_rows[project_id]``.
    """

    def __init__(self, store: DocumentStore, notifier: Notifier, audit: Optional[AuditLog] = None,
                 user=None, write_chunk_size: int = DEFAULT_WRITE_CHUNK_SIZE,
                 default_target_languages: Optional[List[str]] = None):
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.user = user
        self.write_chunk_size = write_chunk_size
        self.default_target_languages = list(default_target_languages or ["my", "zh"])

        self.projects: Dict[str, Project] = {}
        self.pages: Dict[str, List[Page]] = {}
        self.page_rows: Dict[str, Dict[str, List[Row]]] = {}
        self.legacy_rows: Dict[str, List[Row]] = {}

        self._selection: Dict[str, List[str]] = {}
        self._cursor: Dict[str, Optional[str]] = {}
        self._selected_page: Dict[str, Optional[str]] = {}

        self.is_loading = False
        self.load_error = False
        self.data_source = "store"

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_all(self) -> bool:
        """
        Rebuild the whole cache from the store.

        Returns:
            bool: False when the project list itself could not be read.
        """
        self.is_loading = True
        try:
            try:
                docs = await self.store.query(PROJECTS, order_by="updatedAt", descending=True)
            except StoreError as e:
                logger.error("Failed to load projects: %s", e)
                self.projects, self.pages, self.page_rows, self.legacy_rows = {}, {}, {}, {}
                self.load_error = True
                self.data_source = "error"
                self.notifier.error("Could not load projects. Showing an empty list.")
                return False

            self.projects = {doc["id"]: Project.from_document(doc) for doc in docs}
            self.pages, self.page_rows, self.legacy_rows = {}, {}, {}
            results = await asyncio.gather(*(self.load_project(pid) for pid in list(self.projects)))

            failed = [pid for pid, ok in zip(list(self.projects), results) if not ok]
            if failed:
                logger.warning("Rows of %d project(s) could not be loaded: %s", len(failed), ", ".join(failed))
            self._prune_selection()
            self.load_error = False
            self.data_source = "store"
            logger.info("Loaded %d project(s)", len(self.projects))
            return True
        finally:
            self.is_loading = False

    async def load_project(self, project_id: str) -> bool:
        """
        Load pages and rows of one project and recompute its derived stats.

        A project with legacy rows and no pages is migrated into a new
        "Page 1" first. Migration is best effort; on failure the project stays
        on the flat layout.
        """
        try:
            project = self.projects.get(project_id)
            if project is None:
                doc = await self.store.get(PROJECTS, project_id)
                if doc is None:
                    logger.warning("Project %s does not exist", project_id)
                    return False
                project = Project.from_document(doc)
                self.projects[project_id] = project

            page_docs = await self.store.query(pages_path(project_id), order_by="order")
            legacy_docs = await self.store.query(legacy_rows_path(project_id), order_by="order")

            if legacy_docs and not page_docs:
                migrated = await self._migrate_legacy_rows(project, legacy_docs)
                if migrated:
                    page_docs = [migrated]
                    legacy_docs = []

            pages = [Page.from_document(doc, project_id) for doc in page_docs]
            rows_by_page: Dict[str, List[Row]] = {}
            for page in pages:
                row_docs = await self.store.query(page_rows_path(project_id, page.id), order_by="order")
                rows_by_page[page.id] = [
                    Row.from_document(doc, project_id, page.id, project.target_languages) for doc in row_docs
                ]
            legacy = [Row.from_document(doc, project_id, "", project.target_languages) for doc in legacy_docs]
        except StoreError as e:
            logger.error("Failed to load project %s: %s", project_id, e)
            return False

        self.pages[project_id] = pages
        self.page_rows[project_id] = rows_by_page
        self.legacy_rows[project_id] = legacy
        self._apply_stats(project_id)
        return True

    async def _migrate_legacy_rows(self, project: Project, legacy_docs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        page_id = new_document_id()
        page_doc = {"name": DEFAULT_PAGE_NAME, "order": 0, "createdAt": now_iso()}
        target = page_rows_path(project.id, page_id)
        try:
            await self.store.set(pages_path(project.id), page_id, page_doc)
            for chunk in chunked(legacy_docs, self.write_chunk_size):
                batch = self.store.batch()
                for doc in chunk:
                    data = {k: v for k, v in doc.items() if k != "id"}
                    data["pageId"] = page_id
                    batch.set(target, doc["id"], data)
                await batch.commit()
            for chunk in chunked(legacy_docs, self.write_chunk_size):
                batch = self.store.batch()
                for doc in chunk:
                    batch.delete(legacy_rows_path(project.id), doc["id"])
                await batch.commit()
        except StoreError as e:
            logger.warning("Migration of legacy rows for project %s failed, staying on flat layout: %s",
                           project.id, e)
            try:
                await self.store.delete(pages_path(project.id), page_id)
            except StoreError as cleanup_error:
                logger.warning("Could not remove partially migrated page %s: %s", page_id, cleanup_error)
            return None

        logger.info("Migrated %d legacy row(s) of project %s into '%s'",
                    len(legacy_docs), project.id, DEFAULT_PAGE_NAME)
        page_doc["id"] = page_id
        return page_doc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_project(self, project_id: str) -> Optional[Project]:
        return self.projects.get(project_id)

    def list_projects(self) -> List[Project]:
        return list(self.projects.values())

    def get_pages(self, project_id: str) -> List[Page]:
        return list(self.pages.get(project_id, []))

    def get_page_rows(self, project_id: str, page_id: str) -> List[Row]:
        return list(self.page_rows.get(project_id, {}).get(page_id, []))

    def get_legacy_rows(self, project_id: str) -> List[Row]:
        return list(self.legacy_rows.get(project_id, []))

    def has_pages(self, project_id: str) -> bool:
        return bool(self.pages.get(project_id))

    def all_rows(self, project_id: str) -> List[Row]:
        rows: List[Row] = []
        for page in self.pages.get(project_id, []):
            rows.extend(self.page_rows.get(project_id, {}).get(page.id, []))
        rows.extend(self.legacy_rows.get(project_id, []))
        return rows

    def _row_list(self, project_id: str, page_id: str) -> List[Row]:
        if page_id:
            return self.page_rows.setdefault(project_id, {}).setdefault(page_id, [])
        return self.legacy_rows.setdefault(project_id, [])

    def find_row(self, project_id: str, row_id: str) -> Optional[RowLocation]:
        """Locate a row by linear scan of the cached pages, then the legacy rows."""
        for page_id, rows in self.page_rows.get(project_id, {}).items():
            for index, row in enumerate(rows):
                if row.id == row_id:
                    return page_id, index, row
        for index, row in enumerate(self.legacy_rows.get(project_id, [])):
            if row.id == row_id:
                return "", index, row
        return None

    def get_row(self, project_id: str, row_id: str) -> Optional[Row]:
        location = self.find_row(project_id, row_id)
        return location[2] if location else None

    def stats(self) -> Dict[str, int]:
        projects = list(self.projects.values())
        return {
            "total_projects": len(projects),
            "draft": sum(1 for p in projects if p.status == STATUS_DRAFT),
            "in_review": sum(1 for p in projects if p.status == STATUS_REVIEW),
            "approved": sum(1 for p in projects if p.status == STATUS_APPROVED),
            "total_rows": sum(p.total_rows for p in projects),
            "pending_review": sum(p.pending_review for p in projects),
        }

    # ------------------------------------------------------------------
    # Selection and cursor
    # ------------------------------------------------------------------

    def select_rows(self, project_id: str, row_ids: Sequence[str], replace: bool = True) -> None:
        current = [] if replace else list(self._selection.get(project_id, []))
        for row_id in row_ids:
            if row_id not in current:
                current.append(row_id)
        self._selection[project_id] = current

    def selected_row_ids(self, project_id: str) -> List[str]:
        return list(self._selection.get(project_id, []))

    def clear_selection(self, project_id: str) -> None:
        self._selection.pop(project_id, None)

    def set_cursor(self, project_id: str, row_id: Optional[str]) -> None:
        self._cursor[project_id] = row_id

    def cursor(self, project_id: str) -> Optional[str]:
        return self._cursor.get(project_id)

    def select_page(self, project_id: str, page_id: Optional[str]) -> None:
        self._selected_page[project_id] = page_id

    def selected_page_id(self, project_id: str) -> Optional[str]:
        return self._selected_page.get(project_id)

    def purge_row_state(self, project_id: str, row_ids: Sequence[str]) -> None:
        removed = set(row_ids)
        if project_id in self._selection:
            self._selection[project_id] = [rid for rid in self._selection[project_id] if rid not in removed]
        if self._cursor.get(project_id) in removed:
            self._cursor[project_id] = None

    def _prune_selection(self) -> None:
        for project_id in list(self._selection):
            existing = {row.id for row in self.all_rows(project_id)}
            self.purge_row_state(project_id, [rid for rid in self._selection[project_id] if rid not in existing])
        for project_id, page_id in list(self._selected_page.items()):
            if page_id and page_id not in {p.id for p in self.pages.get(project_id, [])}:
                self._selected_page[project_id] = None

    # ------------------------------------------------------------------
    # Project stats
    # ------------------------------------------------------------------

    def _apply_stats(self, project_id: str) -> Dict[str, Any]:
        stats = project_stats(self.all_rows(project_id))
        project = self.projects.get(project_id)
        if project is not None:
            for name, value in stats.items():
                setattr(project, name, value)
        return stats

    @staticmethod
    def _stats_document(stats: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "progress": stats["progress"],
            "totalRows": stats["total_rows"],
            "translatedRows": stats["translated_rows"],
            "pendingReview": stats["pending_review"],
            "status": stats["status"],
        }

    async def recompute_project_stats(self, project_id: str, persist: bool = True) -> Dict[str, Any]:
        stats = self._apply_stats(project_id)
        if persist and project_id in self.projects:
            try:
                await self.store.update(PROJECTS, project_id, self._stats_document(stats))
            except StoreError as e:
                logger.warning("Failed to persist stats of project %s: %s", project_id, e)
        return stats

    async def touch_project(self, project_id: str) -> None:
        """Bump updatedAt and version and persist derived stats after a row write."""
        project = self.projects.get(project_id)
        if project is None:
            return
        stats = self._apply_stats(project_id)
        project.updated_at = now_iso()
        project.version += 1
        fields = self._stats_document(stats)
        fields.update({"updatedAt": project.updated_at, "version": project.version})
        try:
            await self.store.update(PROJECTS, project_id, fields)
        except StoreError as e:
            logger.warning("Failed to touch project %s: %s", project_id, e)

    # ------------------------------------------------------------------
    # Row mutations
    # ------------------------------------------------------------------

    async def update_row(self, project_id: str, row_id: str, updates: Dict[str, Any],
                         notify: bool = True, audit_action: Optional[AuditAction] = None) -> bool:
        """
        Apply a partial update to one row.

        The cache is updated immediately; the store receives only the changed
        fields as dotted keys so that concurrent edits of sibling languages are
        not clobbered.

        Args:
            project_id: Owning project.
            row_id: Row to update.
            updates: Row attribute names mapped to new values (see ``apply_row_update``).
            notify: Raise a user notification on failure.
            audit_action: Audit entry to record on success.

        Returns:
            bool: True when the remote write succeeded.
        """
        location = self.find_row(project_id, row_id)
        if location is None:
            logger.warning("Row %s not found in project %s", row_id, project_id)
            if notify:
                self.notifier.error("Row not found. It may have been deleted.")
            return False

        page_id, index, before = location
        after = apply_row_update(before, updates)
        after.updated_at = now_iso()
        self._row_list(project_id, page_id)[index] = after

        fields = row_update_fields(before, after)
        try:
            await self.store.update(rows_path(project_id, page_id), row_id, fields)
        except StoreError as e:
            logger.error("Failed to save row %s of project %s: %s", row_id, project_id, e)
            if notify:
                self.notifier.error("Failed to save changes. They will be lost on the next refresh.")
            return False

        await self.touch_project(project_id)
        if audit_action is not None and self.audit is not None:
            await self.audit.log_action(self.user, audit_action, "row", row_id, project_id,
                                        before=before.to_document(), after=after.to_document())
        return True

    async def update_rows(self, project_id: str, updates: Dict[str, Dict[str, Any]],
                          notify: bool = True) -> Tuple[int, int]:
        """Update several rows; one failure never stops the rest. Returns (succeeded, failed)."""
        succeeded = failed = 0
        for row_id, row_updates in updates.items():
            if await self.update_row(project_id, row_id, row_updates, notify=False):
                succeeded += 1
            else:
                failed += 1
        if notify and updates:
            if failed:
                self.notifier.error(f"Saved {succeeded} row(s); {failed} failed.")
            else:
                self.notifier.success(f"Saved {succeeded} row(s).")
        return succeeded, failed

    def _build_row(self, project: Project, page_id: str, data: Dict[str, Any], order: int) -> Row:
        translations: Dict[str, TranslationCell] = {}
        for lang, value in (data.get("translations") or {}).items():
            if isinstance(value, TranslationCell):
                translations[lang] = value
            else:
                translations[lang] = TranslationCell.from_document(value)
        for lang in project.target_languages:
            translations.setdefault(lang, TranslationCell())
        if data.get("status"):
            status = normalize_status(data["status"])
        else:
            status = compute_row_status(translations, project.target_languages)

        created = now_iso()
        return Row(
            id=data.get("id") or new_document_id(),
            project_id=project.id,
            page_id=page_id,
            source_text=data.get("source_text") or data.get("sourceText") or data.get("en") or "",
            translations=translations,
            status=status,
            prompt_id=data.get("prompt_id") or data.get("promptId"),
            order=order,
            context=data.get("context") or "",
            created_at=created,
            updated_at=created,
        )

    def _resolve_page(self, project_id: str, page_id: Optional[str]) -> str:
        if page_id:
            return page_id
        pages = self.pages.get(project_id) or []
        # Paged projects never receive new flat rows
        return pages[0].id if pages else ""

    async def add_rows(self, project_id: str, page_id: Optional[str], rows: List[Dict[str, Any]],
                       notify: bool = True) -> List[Row]:
        """
        Append rows to a page (or to the flat layout of a project without pages).

        Rows without an id get a fresh one, so adding equal content twice
        creates two rows; a row whose id already exists replaces it. A row
        without an explicit status takes the one its cells add up to, so rows
        without translations are draft. Every row gets an explicit incrementing
        ``order``. Remote writes go out in sequential chunks of
        ``write_chunk_size``.

        Returns:
            List[Row]: The rows as cached.
        """
        project = self.projects.get(project_id)
        if project is None:
            logger.error("Cannot add rows: project %s is not loaded", project_id)
            if notify:
                self.notifier.error("Project not found.")
            return []
        if not rows:
            return []

        page_id = self._resolve_page(project_id, page_id)
        cached = self._row_list(project_id, page_id)
        next_order = max((row.order for row in cached), default=-1) + 1

        new_rows: List[Row] = []
        for data in rows:
            existing_index = next((i for i, r in enumerate(cached) if data.get("id") and r.id == data["id"]), None)
            if existing_index is not None:
                row = self._build_row(project, page_id, data, cached[existing_index].order)
                cached[existing_index] = row
            else:
                row = self._build_row(project, page_id, data, next_order)
                next_order += 1
                cached.append(row)
            new_rows.append(row)

        path = rows_path(project_id, page_id)
        written = 0
        try:
            for chunk in chunked(new_rows, self.write_chunk_size):
                batch = self.store.batch()
                for row in chunk:
                    batch.set(path, row.id, row.to_document())
                await batch.commit()
                written += len(chunk)
                logger.debug("Wrote %d/%d rows to %s", written, len(new_rows), path)
        except StoreError as e:
            logger.error("Failed to save rows for project %s after %d of %d: %s",
                         project_id, written, len(new_rows), e)
            if notify:
                self.notifier.error(f"Failed to save rows ({written} of {len(new_rows)} saved).")
            return new_rows

        await self.touch_project(project_id)
        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.ROWS_IMPORTED, "page" if page_id else "project",
                                        page_id or project_id, project_id, metadata={"count": len(new_rows)})
        if notify:
            self.notifier.success(f"Added {len(new_rows)} row(s).")
        return new_rows

    def find_duplicate(self, project_id: str, page_id: Optional[str], source_text: str,
                       translations: Optional[Dict[str, str]] = None) -> Optional[Tuple[Row, str]]:
        """Case-insensitive, trimmed match on the source text or any target text."""
        candidates = self.all_rows(project_id) if page_id is None else self.get_page_rows(project_id, page_id)
        source_key = _normalize_key(source_text)
        target_keys = {lang: _normalize_key(text) for lang, text in (translations or {}).items()
                       if _normalize_key(text)}
        for row in candidates:
            if source_key and _normalize_key(row.source_text) == source_key:
                return row, "source"
            for lang, key in target_keys.items():
                if _normalize_key(row.cell(lang).text) == key:
                    return row, lang
        return None

    async def add_manual_row(self, project_id: str, page_id: Optional[str], source_text: str,
                             translations: Optional[Dict[str, str]] = None, context: str = "",
                             prompt_id: Optional[str] = None, allow_duplicate: bool = False) -> Optional[Row]:
        """
        Add one hand-entered row after validating it locally.

        Raises:
            RowValidationError: The source text is empty.
            DuplicateRowError: Another row already has the same source or target text.
        """
        if not (source_text or "").strip():
            raise RowValidationError("Source text is required.")

        page_id = self._resolve_page(project_id, page_id)
        if not allow_duplicate:
            match = self.find_duplicate(project_id, page_id or None, source_text, translations)
            if match is not None:
                row, field = match
                raise DuplicateRowError(f"A row with the same {field} text already exists.",
                                        duplicate=row, field=field)

        data = {
            "source_text": source_text.strip(),
            "translations": {lang: {"text": text} for lang, text in (translations or {}).items()},
            "context": context,
            "prompt_id": prompt_id,
        }
        added = await self.add_rows(project_id, page_id, [data])
        return added[0] if added else None

    async def delete_documents(self, path: str, doc_ids: Sequence[str]) -> None:
        for chunk in chunked(list(doc_ids), self.write_chunk_size):
            batch = self.store.batch()
            for doc_id in chunk:
                batch.delete(path, doc_id)
            await batch.commit()

    async def delete_rows(self, project_id: str, row_ids: Sequence[str], page_id: Optional[str] = None,
                          notify: bool = True) -> bool:
        """
        Remove rows from the cache and the store.

        Without ``page_id`` each row's location is resolved from the cache.
        Selection and cursor state referencing the rows is purged.
        """
        by_path: Dict[str, List[str]] = {}
        for row_id in row_ids:
            if page_id is not None:
                location_page = page_id
            else:
                location = self.find_row(project_id, row_id)
                if location is None:
                    logger.debug("Row %s already absent from cache", row_id)
                    continue
                location_page = location[0]
            by_path.setdefault(location_page, []).append(row_id)

        removed = set(row_ids)
        for location_page in by_path:
            rows = self._row_list(project_id, location_page)
            rows[:] = [row for row in rows if row.id not in removed]
        self.purge_row_state(project_id, list(row_ids))

        try:
            for location_page, ids in by_path.items():
                await self.delete_documents(rows_path(project_id, location_page), ids)
        except StoreError as e:
            logger.error("Failed to delete rows of project %s: %s", project_id, e)
            if notify:
                self.notifier.error("Failed to delete rows.")
            return False

        await self.touch_project(project_id)
        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.ROWS_DELETED, "project", project_id, project_id,
                                        metadata={"count": len(removed)})
        if notify:
            self.notifier.success(f"Deleted {len(removed)} row(s).")
        return True

    # ------------------------------------------------------------------
    # Project mutations
    # ------------------------------------------------------------------

    async def create_project(self, data: Dict[str, Any],
                             sheets: Optional[Dict[str, Any]] = None) -> Optional[Project]:
        """
        Create a project with one page per imported sheet, or an empty "Page 1".

        Args:
            data: name, description, target_languages, source_language and theme.
            sheets: Sheet name mapped to ``{"entries": [...]}`` (or a plain list of row dicts).
        """
        now = now_iso()
        user_id = getattr(self.user, "id", None)
        project = Project(
            id=new_document_id(),
            name=data.get("name") or "Untitled project",
            description=data.get("description") or "",
            target_languages=list(data.get("target_languages") or self.default_target_languages),
            source_language=data.get("source_language") or "en",
            theme=data.get("theme") or "",
            owner_id=user_id,
            created_by=user_id,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.store.set(PROJECTS, project.id, project.to_document())
        except StoreError as e:
            logger.error("Failed to create project '%s': %s", project.name, e)
            self.notifier.error("Failed to create project.")
            return None

        self.projects[project.id] = project
        self.pages[project.id] = []
        self.page_rows[project.id] = {}
        self.legacy_rows[project.id] = []

        sheet_items = list((sheets or {}).items()) or [(DEFAULT_PAGE_NAME, [])]
        for order, (sheet_name, sheet) in enumerate(sheet_items):
            entries = sheet.get("entries", []) if isinstance(sheet, dict) else list(sheet or [])
            page = await self.create_page_document(project.id, sheet_name, order)
            if page is None:
                self.notifier.error(f"Project created, but page '{sheet_name}' could not be saved.")
                continue
            if entries:
                await self.add_rows(project.id, page.id, entries, notify=False)

        await self.recompute_project_stats(project.id)
        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.PROJECT_CREATED, "project", project.id, project.id,
                                        after=project.to_document())
        self.notifier.success(f"Created project '{project.name}'.")
        return project

    async def create_page_document(self, project_id: str, name: str, order: int) -> Optional[Page]:
        page = Page(id=new_document_id(), project_id=project_id, name=name, order=order, created_at=now_iso())
        try:
            await self.store.set(pages_path(project_id), page.id, page.to_document())
        except StoreError as e:
            logger.error("Failed to create page '%s' in project %s: %s", name, project_id, e)
            return None
        self.pages.setdefault(project_id, []).append(page)
        self.page_rows.setdefault(project_id, {})[page.id] = []
        return page

    async def update_project(self, project_id: str, updates: Dict[str, Any]) -> bool:
        project = self.projects.get(project_id)
        if project is None:
            self.notifier.error("Project not found.")
            return False
        fields = {}
        for name, value in updates.items():
            if name not in PROJECT_FIELD_MAP:
                logger.warning("Ignoring unknown project field '%s'", name)
                continue
            setattr(project, name, value)
            fields[PROJECT_FIELD_MAP[name]] = value
        project.updated_at = now_iso()
        project.version += 1
        fields.update({"updatedAt": project.updated_at, "version": project.version})
        try:
            await self.store.update(PROJECTS, project_id, fields)
        except StoreError as e:
            logger.error("Failed to update project %s: %s", project_id, e)
            self.notifier.error("Failed to update project.")
            return False
        return True

    async def delete_project(self, project_id: str) -> bool:
        """
        Delete a project and everything under it.

        Order: rows of every page, page documents, legacy rows, the project
        document. The cascade reads from the store rather than the cache, is
        chunked and not atomic; re-running it after a partial failure only
        deletes what is left.
        """
        try:
            page_docs = await self.store.query(pages_path(project_id))
            for page_doc in page_docs:
                row_docs = await self.store.query(page_rows_path(project_id, page_doc["id"]))
                await self.delete_documents(page_rows_path(project_id, page_doc["id"]),
                                            [doc["id"] for doc in row_docs])
            await self.delete_documents(pages_path(project_id), [doc["id"] for doc in page_docs])
            legacy_docs = await self.store.query(legacy_rows_path(project_id))
            await self.delete_documents(legacy_rows_path(project_id), [doc["id"] for doc in legacy_docs])
            await self.store.delete(PROJECTS, project_id)
        except StoreError as e:
            logger.error("Failed to delete project %s: %s", project_id, e)
            self.notifier.error("Failed to delete project. Retry to finish removing it.")
            return False

        project = self.projects.pop(project_id, None)
        self.pages.pop(project_id, None)
        self.page_rows.pop(project_id, None)
        self.legacy_rows.pop(project_id, None)
        self._selection.pop(project_id, None)
        self._cursor.pop(project_id, None)
        self._selected_page.pop(project_id, None)

        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.PROJECT_DELETED, "project", project_id, project_id,
                                        before=project.to_document() if project else None)
        self.notifier.success("Project deleted.")
        return True
