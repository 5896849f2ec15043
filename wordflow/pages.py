"""Uniform row view over paged and flat projects, plus page management."""
import logging
from typing import Any, Dict, Iterable, List, Optional

from wordflow.audit import AuditAction
from wordflow.document_store import page_rows_path, pages_path
from wordflow.errors import StoreError
from wordflow.models import Page, Row
from wordflow.row_store import RowStore

logger = logging.getLogger(__name__)


def filter_rows(rows: Iterable[Row], search: str = "", statuses: Optional[Iterable[str]] = None,
                target_languages: Optional[Iterable[str]] = None) -> List[Row]:
    """Case-insensitive search over source and target text, optionally limited to row statuses."""
    query = (search or "").strip().lower()
    allowed = set(statuses or [])
    result = []
    for row in rows:
        if allowed and row.status not in allowed:
            continue
        if query:
            langs = list(target_languages) if target_languages is not None else list(row.translations)
            haystack = [row.source_text] + [row.cell(lang).text for lang in langs]
            if not any(query in (text or "").lower() for text in haystack):
                continue
        result.append(row)
    return result


class PageAggregate:
    """Page operations on top of the row cache."""

    def __init__(self, row_store: RowStore):
        self.row_store = row_store

    @property
    def store(self):
        return self.row_store.store

    def current_page_id(self, project_id: str) -> Optional[str]:
        pages = self.row_store.get_pages(project_id)
        if not pages:
            return None
        selected = self.row_store.selected_page_id(project_id)
        if selected and any(page.id == selected for page in pages):
            return selected
        return pages[0].id

    def current_rows(self, project_id: str, page_id: Optional[str] = None) -> List[Row]:
        """
        Rows of the given page, the selected page or the first page.

        Projects without pages return their flat rows instead.
        """
        if not self.row_store.has_pages(project_id):
            return self.row_store.get_legacy_rows(project_id)
        return self.row_store.get_page_rows(project_id, page_id or self.current_page_id(project_id))

    async def add_page(self, project_id: str, name: str,
                       rows: Optional[List[Dict[str, Any]]] = None) -> Optional[Page]:
        if self.row_store.get_project(project_id) is None:
            self.row_store.notifier.error("Project not found.")
            return None
        existing = self.row_store.get_pages(project_id)
        order = max((page.order for page in existing), default=-1) + 1
        page = await self.row_store.create_page_document(project_id, name or f"Page {order + 1}", order)
        if page is None:
            self.row_store.notifier.error("Failed to add page.")
            return None
        if rows:
            await self.row_store.add_rows(project_id, page.id, rows, notify=False)
        if self.row_store.audit is not None:
            await self.row_store.audit.log_action(self.row_store.user, AuditAction.PAGE_ADDED, "page", page.id,
                                                  project_id, after=page.to_document())
        self.row_store.notifier.success(f"Added page '{page.name}'.")
        return page

    async def rename_page(self, project_id: str, page_id: str, name: str) -> bool:
        page = next((p for p in self.row_store.pages.get(project_id, []) if p.id == page_id), None)
        if page is None:
            self.row_store.notifier.error("Page not found.")
            return False
        old_name, page.name = page.name, name
        try:
            await self.store.update(pages_path(project_id), page_id, {"name": name})
        except StoreError as e:
            logger.error("Failed to rename page %s: %s", page_id, e)
            self.row_store.notifier.error("Failed to rename page.")
            return False
        if self.row_store.audit is not None:
            await self.row_store.audit.log_action(self.row_store.user, AuditAction.PAGE_RENAMED, "page", page_id,
                                                  project_id, before={"name": old_name}, after={"name": name})
        return True

    async def delete_page(self, project_id: str, page_id: str) -> bool:
        """
        Delete a page and its rows.

        The store does not cascade, so the page's rows are read from the store
        and deleted in chunks before the page document.
        """
        try:
            row_docs = await self.store.query(page_rows_path(project_id, page_id))
            await self.row_store.delete_documents(page_rows_path(project_id, page_id),
                                                  [doc["id"] for doc in row_docs])
            await self.store.delete(pages_path(project_id), page_id)
        except StoreError as e:
            logger.error("Failed to delete page %s of project %s: %s", page_id, project_id, e)
            self.row_store.notifier.error("Failed to delete page.")
            return False

        removed_rows = self.row_store.page_rows.get(project_id, {}).pop(page_id, [])
        self.row_store.purge_row_state(project_id, [row.id for row in removed_rows])
        pages = self.row_store.pages.get(project_id, [])
        self.row_store.pages[project_id] = [page for page in pages if page.id != page_id]
        if self.row_store.selected_page_id(project_id) == page_id:
            self.row_store.select_page(project_id, None)
        await self.row_store.touch_project(project_id)

        if self.row_store.audit is not None:
            await self.row_store.audit.log_action(self.row_store.user, AuditAction.PAGE_DELETED, "page", page_id,
                                                  project_id, metadata={"rows": len(row_docs)})
        self.row_store.notifier.success("Page deleted.")
        return True
