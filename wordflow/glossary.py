"""Glossary terms and categories, and matching of terms inside text."""
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from wordflow.audit import AuditAction, AuditLog
from wordflow.document_store import GLOSSARY_CATEGORIES, GLOSSARY_TERMS, DocumentStore, chunked, new_document_id
from wordflow.errors import StoreError
from wordflow.models import GlossaryCategory, GlossaryTerm, STATUS_APPROVED, STATUS_DRAFT, now_iso
from wordflow.notifications import Notifier

logger = logging.getLogger(__name__)

# Languages written without spaces between words
_NO_WORD_BOUNDARY_LANGS = ("zh",)
_CONTENT_FIELDS = ("english", "translations", "category", "remark")


@dataclass
class GlossaryMatch:
    start: int
    end: int
    text: str
    term: GlossaryTerm


def find_glossary_matches(text: str, terms: List[GlossaryTerm], lang: str = "en") -> List[GlossaryMatch]:
    """
    Locate glossary terms in ``text``.

    ``lang`` selects which form of each term to look for: the English form for
    ``en``, otherwise the translation into ``lang``. Matching is
    case-insensitive on word boundaries, except for Chinese which has none.
    Overlapping matches resolve to the longer one.
    """
    if not text or not terms:
        return []

    candidates: List[GlossaryMatch] = []
    for term in terms:
        needle = term.english if lang == "en" else term.translations.get(lang, "")
        needle = (needle or "").strip()
        if not needle:
            continue
        if lang in _NO_WORD_BOUNDARY_LANGS:
            pattern = re.compile(re.escape(needle))
        else:
            pattern = re.compile(rf'\b{re.escape(needle)}\b', re.IGNORECASE)
        for match in pattern.finditer(text):
            candidates.append(GlossaryMatch(match.start(), match.end(), match.group(0), term))

    candidates.sort(key=lambda m: (m.start, -(m.end - m.start)))
    matches: List[GlossaryMatch] = []
    for candidate in candidates:
        if matches and candidate.start < matches[-1].end:
            if (candidate.end - candidate.start) > (matches[-1].end - matches[-1].start):
                matches[-1] = candidate
            continue
        matches.append(candidate)
    return matches


class GlossaryLibrary:
    def __init__(self, store: DocumentStore, notifier: Notifier, audit: Optional[AuditLog] = None,
                 user=None, write_chunk_size: int = 400):
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.user = user
        self.write_chunk_size = write_chunk_size

    async def list_terms(self, status: Optional[str] = None) -> List[GlossaryTerm]:
        filters = [("status", "==", status)] if status else []
        try:
            docs = await self.store.query(GLOSSARY_TERMS, filters, order_by="english")
        except StoreError as e:
            logger.error("Failed to load glossary terms: %s", e)
            self.notifier.error("Could not load the glossary.")
            return []
        return [GlossaryTerm.from_document(doc) for doc in docs]

    async def approved_terms(self) -> List[GlossaryTerm]:
        """Only approved terms are used for translation and highlighting."""
        return await self.list_terms(STATUS_APPROVED)

    async def terms_for_translation(self) -> List[Dict[str, Any]]:
        return [term.as_prompt_term() for term in await self.approved_terms()]

    async def get_term(self, term_id: str) -> Optional[GlossaryTerm]:
        try:
            doc = await self.store.get(GLOSSARY_TERMS, term_id)
        except StoreError as e:
            logger.error("Failed to load glossary term %s: %s", term_id, e)
            return None
        return GlossaryTerm.from_document(doc) if doc else None

    def _new_term(self, data: Dict[str, Any]) -> GlossaryTerm:
        now = now_iso()
        return GlossaryTerm(
            id=data.get("id") or new_document_id(),
            english=(data.get("english") or "").strip(),
            translations={k: v for k, v in (data.get("translations") or {}).items() if v},
            category=data.get("category") or "",
            remark=data.get("remark") or "",
            status=data.get("status") or STATUS_DRAFT,
            version=1,
            created_by=getattr(self.user, "id", None),
            created_at=now,
            updated_at=now,
        )

    async def create_term(self, data: Dict[str, Any]) -> Optional[GlossaryTerm]:
        term = self._new_term(data)
        if not term.english:
            self.notifier.error("A glossary term needs its English text.")
            return None
        try:
            await self.store.set(GLOSSARY_TERMS, term.id, term.to_document())
        except StoreError as e:
            logger.error("Failed to create glossary term '%s': %s", term.english, e)
            self.notifier.error("Failed to add glossary term.")
            return None
        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.GLOSSARY_ADDED, "glossary", term.id,
                                        after=term.to_document())
        return term

    async def create_terms(self, items: List[Dict[str, Any]]) -> List[GlossaryTerm]:
        """Bulk import in chunked batches; entries without English text are skipped."""
        terms = [self._new_term(data) for data in items]
        terms = [term for term in terms if term.english]
        created: List[GlossaryTerm] = []
        try:
            for chunk in chunked(terms, self.write_chunk_size):
                batch = self.store.batch()
                for term in chunk:
                    batch.set(GLOSSARY_TERMS, term.id, term.to_document())
                await batch.commit()
                created.extend(chunk)
        except StoreError as e:
            logger.error("Glossary import stopped after %d of %d terms: %s", len(created), len(terms), e)
            self.notifier.error(f"Imported {len(created)} of {len(terms)} glossary terms.")
            return created
        if self.audit is not None and created:
            await self.audit.log_action(self.user, AuditAction.GLOSSARY_ADDED, "glossary", None,
                                        metadata={"count": len(created)})
        self.notifier.success(f"Imported {len(created)} glossary term(s).")
        return created

    async def update_term(self, term_id: str, updates: Dict[str, Any]) -> Optional[GlossaryTerm]:
        """
        Edit a term and bump its version.

        A content edit on an approved term sends it back to draft unless the
        same update sets the status.
        """
        existing = await self.get_term(term_id)
        if existing is None:
            self.notifier.error("Glossary term not found.")
            return None

        updated = replace(existing, translations=dict(existing.translations))
        content_changed = False
        for name in _CONTENT_FIELDS:
            if name in updates and updates[name] != getattr(existing, name):
                setattr(updated, name, updates[name])
                content_changed = True
        if "status" in updates:
            updated.status = updates["status"]
        elif content_changed and existing.status == STATUS_APPROVED:
            updated.status = STATUS_DRAFT
        updated.version = existing.version + 1
        updated.updated_at = now_iso()

        try:
            await self.store.set(GLOSSARY_TERMS, term_id, updated.to_document())
        except StoreError as e:
            logger.error("Failed to update glossary term %s: %s", term_id, e)
            self.notifier.error("Failed to update glossary term.")
            return None

        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.GLOSSARY_EDITED, "glossary", term_id,
                                        before=existing.to_document(), after=updated.to_document())
        return updated

    async def delete_term(self, term_id: str) -> bool:
        return await self.delete_terms([term_id])

    async def delete_terms(self, term_ids: List[str]) -> bool:
        try:
            for chunk in chunked(list(term_ids), self.write_chunk_size):
                batch = self.store.batch()
                for term_id in chunk:
                    batch.delete(GLOSSARY_TERMS, term_id)
                await batch.commit()
        except StoreError as e:
            logger.error("Failed to delete glossary terms: %s", e)
            self.notifier.error("Failed to delete glossary terms.")
            return False
        if self.audit is not None:
            for term_id in term_ids:
                await self.audit.log_action(self.user, AuditAction.GLOSSARY_DELETED, "glossary", term_id)
        return True

    async def list_categories(self) -> List[GlossaryCategory]:
        try:
            docs = await self.store.query(GLOSSARY_CATEGORIES, order_by="name")
        except StoreError as e:
            logger.error("Failed to load glossary categories: %s", e)
            return []
        return [GlossaryCategory.from_document(doc) for doc in docs]

    async def create_category(self, name: str, color: str = "slate") -> Optional[GlossaryCategory]:
        category = GlossaryCategory(id=new_document_id(), name=name, color=color)
        try:
            await self.store.set(GLOSSARY_CATEGORIES, category.id, category.to_document())
        except StoreError as e:
            logger.error("Failed to create category '%s': %s", name, e)
            self.notifier.error("Failed to add category.")
            return None
        return category

    async def update_category(self, category_id: str, updates: Dict[str, Any]) -> bool:
        fields = {key: updates[key] for key in ("name", "color") if key in updates}
        try:
            await self.store.update(GLOSSARY_CATEGORIES, category_id, fields)
        except StoreError as e:
            logger.error("Failed to update category %s: %s", category_id, e)
            self.notifier.error("Failed to update category.")
            return False
        return True

    async def delete_category(self, category_id: str) -> bool:
        try:
            await self.store.delete(GLOSSARY_CATEGORIES, category_id)
        except StoreError as e:
            logger.error("Failed to delete category %s: %s", category_id, e)
            self.notifier.error("Failed to delete category.")
            return False
        return True
