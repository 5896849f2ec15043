"""Append-only audit trail of mutating actions."""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from wordflow.document_store import AUDIT_LOGS, DocumentStore
from wordflow.errors import StoreError
from wordflow.models import AuditEntry, now_iso

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    TRANSLATED_AI = "TRANSLATED_AI"
    TRANSLATED_MANUAL = "TRANSLATED_MANUAL"
    EDITED = "EDITED"
    SENT_FOR_REVIEW = "SENT_FOR_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REASSIGNED = "REASSIGNED"
    PROJECT_CREATED = "PROJECT_CREATED"
    PROJECT_DELETED = "PROJECT_DELETED"
    PAGE_ADDED = "PAGE_ADDED"
    PAGE_RENAMED = "PAGE_RENAMED"
    PAGE_DELETED = "PAGE_DELETED"
    ROWS_IMPORTED = "ROWS_IMPORTED"
    ROWS_DELETED = "ROWS_DELETED"
    GLOSSARY_ADDED = "GLOSSARY_ADDED"
    GLOSSARY_EDITED = "GLOSSARY_EDITED"
    GLOSSARY_DELETED = "GLOSSARY_DELETED"
    PROMPT_CREATED = "PROMPT_CREATED"
    PROMPT_EDITED = "PROMPT_EDITED"
    PROMPT_PUBLISHED = "PROMPT_PUBLISHED"
    PROMPT_DELETED = "PROMPT_DELETED"
    USER_UPDATED = "USER_UPDATED"


_ACTION_LABELS = {
    AuditAction.TRANSLATED_AI: "AI translated",
    AuditAction.TRANSLATED_MANUAL: "Manually translated",
    AuditAction.EDITED: "Edited",
    AuditAction.SENT_FOR_REVIEW: "Sent for review",
    AuditAction.APPROVED: "Approved",
    AuditAction.REJECTED: "Requested changes",
    AuditAction.REASSIGNED: "Reassigned reviewer",
    AuditAction.PROJECT_CREATED: "Created project",
    AuditAction.PROJECT_DELETED: "Deleted project",
    AuditAction.PAGE_ADDED: "Added page",
    AuditAction.PAGE_RENAMED: "Renamed page",
    AuditAction.PAGE_DELETED: "Deleted page",
    AuditAction.ROWS_IMPORTED: "Imported rows",
    AuditAction.ROWS_DELETED: "Deleted rows",
    AuditAction.GLOSSARY_ADDED: "Added glossary term",
    AuditAction.GLOSSARY_EDITED: "Edited glossary term",
    AuditAction.GLOSSARY_DELETED: "Deleted glossary term",
    AuditAction.PROMPT_CREATED: "Created prompt",
    AuditAction.PROMPT_EDITED: "Edited prompt",
    AuditAction.PROMPT_PUBLISHED: "Published prompt",
    AuditAction.PROMPT_DELETED: "Deleted prompt",
    AuditAction.USER_UPDATED: "Updated user",
}


def format_action(action: str) -> str:
    try:
        return _ACTION_LABELS[AuditAction(action)]
    except ValueError:
        return action


class AuditLog:
    """
    Writes audit entries to the ``audit_logs`` collection.

    Entries are only ever created. A failed write is logged and reported as
    ``None`` so that auditing never breaks the action being audited.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def log_action(self, user, action: AuditAction, entity_type: str,
                         entity_id: Optional[str] = None, project_id: Optional[str] = None,
                         before: Any = None, after: Any = None,
                         metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """
        Record one action.

        Args:
            user: The acting user; entries without a user are skipped.
            action: What happened.
            entity_type: Kind of entity touched (row, project, page, glossary, prompt, user).
            entity_id: Identifier of the entity.
            project_id: Owning project, if any.
            before: Content before the change.
            after: Content after the change.
            metadata: Free-form details such as counts.

        Returns:
            Optional[str]: The new entry id, or None when nothing was written.
        """
        if user is None or not getattr(user, "id", None):
            return None

        content = None
        if before is not None or after is not None:
            content = {"before": before, "after": after}

        try:
            return await self.store.create(AUDIT_LOGS, {
                "userId": user.id,
                "userEmail": getattr(user, "email", None) or "unknown",
                "action": AuditAction(action).value,
                "entityType": entity_type,
                "entityId": entity_id,
                "projectId": project_id or "",
                "content": content,
                "metadata": metadata,
                "createdAt": now_iso(),
            })
        except StoreError as e:
            logger.warning("Failed to write audit entry %s for %s '%s': %s", action, entity_type, entity_id, e)
            return None

    async def list_entries(self, filters: Optional[Dict[str, Any]] = None,
                           max_results: int = 100) -> List[AuditEntry]:
        """Newest entries first, optionally filtered by userId, action, projectId or entityType."""
        constraints = []
        for key in ("userId", "action", "projectId", "entityType", "entityId"):
            value = (filters or {}).get(key)
            if value:
                constraints.append((key, "==", value.value if isinstance(value, Enum) else value))
        try:
            docs = await self.store.query(AUDIT_LOGS, constraints, order_by="createdAt",
                                          descending=True, limit=max_results)
        except StoreError as e:
            logger.error("Failed to load audit entries: %s", e)
            return []
        return [AuditEntry.from_document(doc) for doc in docs]
