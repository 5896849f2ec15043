"""Prompt template library with a single, always-present default template."""
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from wordflow.audit import AuditAction, AuditLog
from wordflow.document_store import PROMPT_TEMPLATES, DocumentStore
from wordflow.errors import StoreError
from wordflow.models import PromptTemplate, TEMPLATE_DRAFT, TEMPLATE_PUBLISHED, now_iso
from wordflow.notifications import Notifier

logger = logging.getLogger(__name__)

FALLBACK_DEFAULT_ID = "fallback-default"

DEFAULT_TEMPLATE = PromptTemplate(
    id="",
    name="Default Template",
    description="General-purpose translation template. Always used as the base for all translations.",
    prompt="""You are a professional translator. Translate the following text accurately while keeping the original meaning and tone.

Guidelines:
- Preserve any placeholders like {name} or {{variable}}
- Keep formatting (line breaks, punctuation) consistent
- Use natural, fluent language in {{targetLanguage}}
- For Malay: use Malaysian Malay (not Indonesian)
- For Chinese: use Simplified Chinese""",
    category="default",
    tags=["Default", "General"],
    is_default=True,
    status=TEMPLATE_PUBLISHED,
    author="System",
)

_EDITABLE_FIELDS = ("name", "description", "prompt", "category", "tags", "status", "author")


class TemplateLibrary:
    def __init__(self, store: DocumentStore, notifier: Notifier, audit: Optional[AuditLog] = None, user=None):
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.user = user

    async def list_templates(self) -> List[PromptTemplate]:
        try:
            docs = await self.store.query(PROMPT_TEMPLATES, order_by="createdAt", descending=True)
        except StoreError as e:
            logger.error("Failed to load templates: %s", e)
            self.notifier.error("Could not load prompt templates.")
            return []
        return [PromptTemplate.from_document(doc) for doc in docs]

    async def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        try:
            doc = await self.store.get(PROMPT_TEMPLATES, template_id)
        except StoreError as e:
            logger.error("Failed to load template %s: %s", template_id, e)
            return None
        return PromptTemplate.from_document(doc) if doc else None

    async def usable_templates(self) -> List[PromptTemplate]:
        """Published templates plus the default, even while the default is a draft."""
        return [t for t in await self.list_templates() if t.status == TEMPLATE_PUBLISHED or t.is_default]

    async def get_or_create_default(self) -> PromptTemplate:
        """
        Return the default template, creating it on first use.

        When the store is unreachable an unsaved copy of DEFAULT_TEMPLATE is
        returned so translation can still proceed.
        """
        try:
            docs = await self.store.query(PROMPT_TEMPLATES, [("isDefault", "==", True)], limit=1)
            if docs:
                return PromptTemplate.from_document(docs[0])
            now = now_iso()
            template = replace(DEFAULT_TEMPLATE, tags=list(DEFAULT_TEMPLATE.tags), created_at=now, updated_at=now)
            template.id = await self.store.create(PROMPT_TEMPLATES, template.to_document())
            logger.info("Created default prompt template %s", template.id)
            return template
        except StoreError as e:
            logger.error("Could not load or create the default template: %s", e)
            return replace(DEFAULT_TEMPLATE, id=FALLBACK_DEFAULT_ID, tags=list(DEFAULT_TEMPLATE.tags))

    async def _demote_other_defaults(self, keep_id: str) -> None:
        docs = await self.store.query(PROMPT_TEMPLATES, [("isDefault", "==", True)])
        for doc in docs:
            if doc["id"] != keep_id:
                await self.store.update(PROMPT_TEMPLATES, doc["id"], {"isDefault": False, "updatedAt": now_iso()})

    async def create_template(self, data: Dict[str, Any]) -> Optional[PromptTemplate]:
        now = now_iso()
        template = PromptTemplate(
            id="",
            name=data.get("name") or "Untitled template",
            prompt=data.get("prompt") or "",
            description=data.get("description") or "",
            category=data.get("category") or "general",
            tags=list(data.get("tags") or []),
            is_default=bool(data.get("is_default")),
            status=data.get("status") or TEMPLATE_DRAFT,
            version=1,
            author=data.get("author") or getattr(self.user, "display_name", None) or "You",
            created_by=getattr(self.user, "id", None),
            created_at=now,
            updated_at=now,
        )
        try:
            template.id = await self.store.create(PROMPT_TEMPLATES, template.to_document())
            if template.is_default:
                await self._demote_other_defaults(template.id)
        except StoreError as e:
            logger.error("Failed to create template '%s': %s", template.name, e)
            self.notifier.error("Failed to create template.")
            return None

        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.PROMPT_CREATED, "prompt", template.id,
                                        after=template.to_document())
        self.notifier.success(f"Created template '{template.name}'.")
        return template

    async def update_template(self, template_id: str, updates: Dict[str, Any]) -> Optional[PromptTemplate]:
        """Apply edits and bump the version counter."""
        existing = await self.get_template(template_id)
        if existing is None:
            self.notifier.error("Template not found.")
            return None

        updated = replace(existing, tags=list(existing.tags))
        for name in _EDITABLE_FIELDS:
            if name in updates:
                setattr(updated, name, updates[name])
        updated.version = existing.version + 1
        updated.updated_at = now_iso()

        fields = {key: value for key, value in updated.to_document().items()
                  if existing.to_document().get(key) != value}
        try:
            await self.store.update(PROMPT_TEMPLATES, template_id, fields)
        except StoreError as e:
            logger.error("Failed to update template %s: %s", template_id, e)
            self.notifier.error("Failed to update template.")
            return None

        if self.audit is not None:
            action = AuditAction.PROMPT_PUBLISHED if (
                updated.status == TEMPLATE_PUBLISHED and existing.status != TEMPLATE_PUBLISHED
            ) else AuditAction.PROMPT_EDITED
            await self.audit.log_action(self.user, action, "prompt", template_id,
                                        before=existing.to_document(), after=updated.to_document())
        return updated

    async def publish_template(self, template_id: str) -> Optional[PromptTemplate]:
        return await self.update_template(template_id, {"status": TEMPLATE_PUBLISHED})

    async def delete_template(self, template_id: str) -> bool:
        existing = await self.get_template(template_id)
        if existing is None:
            return True
        if existing.is_default:
            self.notifier.error("The default template cannot be deleted.")
            return False
        try:
            await self.store.delete(PROMPT_TEMPLATES, template_id)
        except StoreError as e:
            logger.error("Failed to delete template %s: %s", template_id, e)
            self.notifier.error("Failed to delete template.")
            return False
        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.PROMPT_DELETED, "prompt", template_id,
                                        before=existing.to_document())
        return True
