"""
Domain records for projects, pages, rows and the supporting libraries.

Documents in the store use camelCase field names. Rows carry one structured
``translations`` map in memory; the flattened per-language string fields that
older rows used (``en``, ``my``, ``zh`` ...) only exist at the serialization
boundary: ``Row.to_document`` writes them and ``Row.from_document`` reads them
to backfill missing cells.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

STATUS_DRAFT = "draft"
STATUS_REVIEW = "review"
STATUS_APPROVED = "approved"
STATUS_CHANGES = "changes"
ROW_STATUSES = (STATUS_DRAFT, STATUS_REVIEW, STATUS_APPROVED, STATUS_CHANGES)
PROJECT_STATUSES = (STATUS_DRAFT, STATUS_REVIEW, STATUS_APPROVED)

TEMPLATE_DRAFT = "draft"
TEMPLATE_PUBLISHED = "published"

# Status values written by older revisions of the application
LEGACY_STATUS_MAP = {
    "completed": STATUS_APPROVED,
    "done": STATUS_APPROVED,
    "pending": STATUS_DRAFT,
    "queued": STATUS_DRAFT,
    "translating": STATUS_DRAFT,
    "error": STATUS_DRAFT,
    "rejected": STATUS_CHANGES,
    "needs_changes": STATUS_CHANGES,
}

SOURCE_LEGACY_FIELD = "en"

_ROW_FIELDS = {
    "id", "projectId", "pageId", "sourceText", "source_text", SOURCE_LEGACY_FIELD, "translations",
    "status", "promptId", "order", "context", "createdAt", "updatedAt", "translatedAt",
    "templateUsed", "approvedAt", "remark", "remarks",
}


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def normalize_status(value: Optional[str], default: str = STATUS_DRAFT) -> str:
    if not value:
        return default
    value = str(value).lower()
    if value in ROW_STATUSES:
        return value
    return LEGACY_STATUS_MAP.get(value, default)


@dataclass
class TranslationCell:
    """Per-language state of a row."""
    text: str = ""
    status: str = STATUS_DRAFT
    remark: str = ""
    assigned_manager_id: Optional[str] = None
    assigned_at: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.text or "").strip()

    def to_document(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "status": self.status,
            "remark": self.remark,
            "assignedManagerId": self.assigned_manager_id,
            "assignedAt": self.assigned_at,
        }

    @classmethod
    def from_document(cls, data: Any, inherit_status: str = STATUS_DRAFT,
                      inherit_remark: str = "") -> "TranslationCell":
        if isinstance(data, str):
            return cls(text=data, status=inherit_status, remark=inherit_remark)
        data = data or {}
        return cls(
            text=data.get("text") or "",
            status=normalize_status(data.get("status"), inherit_status),
            remark=data.get("remark") or "",
            assigned_manager_id=data.get("assignedManagerId"),
            assigned_at=data.get("assignedAt"),
        )


@dataclass
class Row:
    id: str
    project_id: str
    page_id: str = ""
    source_text: str = ""
    translations: Dict[str, TranslationCell] = field(default_factory=dict)
    status: str = STATUS_DRAFT
    prompt_id: Optional[str] = None
    order: int = 0
    context: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    translated_at: Optional[str] = None
    template_used: Optional[str] = None
    approved_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_legacy(self) -> bool:
        return not self.page_id

    def cell(self, lang: str) -> TranslationCell:
        return self.translations.get(lang) or TranslationCell()

    def copy(self) -> "Row":
        return replace(
            self,
            translations={lang: replace(cell) for lang, cell in self.translations.items()},
            extra=dict(self.extra),
        )

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the store, including the flattened legacy mirrors."""
        doc = dict(self.extra)
        doc.update({
            "projectId": self.project_id,
            "pageId": self.page_id,
            "sourceText": self.source_text,
            SOURCE_LEGACY_FIELD: self.source_text,
            "translations": {lang: cell.to_document() for lang, cell in self.translations.items()},
            "status": self.status,
            "promptId": self.prompt_id,
            "order": self.order,
            "context": self.context,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "translatedAt": self.translated_at,
            "templateUsed": self.template_used,
            "approvedAt": self.approved_at,
        })
        for lang, cell in self.translations.items():
            doc[lang] = cell.text
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any], project_id: Optional[str] = None,
                      page_id: Optional[str] = None,
                      target_languages: Optional[List[str]] = None) -> "Row":
        """
        Build a row from a stored document.

        Legacy documents may lack the ``translations`` map; each target language
        that only has a flat string field is backfilled from it and inherits the
        row status and remark.
        """
        status = normalize_status(doc.get("status"))
        remark = doc.get("remarks") or doc.get("remark") or ""

        translations: Dict[str, TranslationCell] = {}
        for lang, value in (doc.get("translations") or {}).items():
            translations[lang] = TranslationCell.from_document(value, status, remark)

        known_langs = list(target_languages or [])
        for lang in known_langs:
            if lang in translations:
                continue
            flat_value = doc.get(lang)
            if isinstance(flat_value, str) and flat_value:
                translations[lang] = TranslationCell(text=flat_value, status=status, remark=remark)
        extra_skip = set(_ROW_FIELDS) | set(known_langs) | set(translations)

        return cls(
            id=doc["id"],
            project_id=project_id or doc.get("projectId") or "",
            page_id=page_id if page_id is not None else (doc.get("pageId") or ""),
            source_text=doc.get("sourceText") or doc.get(SOURCE_LEGACY_FIELD) or doc.get("source_text") or "",
            translations=translations,
            status=status,
            prompt_id=doc.get("promptId"),
            order=int(doc.get("order") or 0),
            context=doc.get("context") or "",
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
            translated_at=doc.get("translatedAt"),
            template_used=doc.get("templateUsed"),
            approved_at=doc.get("approvedAt"),
            extra={k: v for k, v in doc.items() if k not in extra_skip},
        )


@dataclass
class Page:
    id: str
    project_id: str
    name: str
    order: int = 0
    created_at: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {"name": self.name, "order": self.order, "createdAt": self.created_at}

    @classmethod
    def from_document(cls, doc: Dict[str, Any], project_id: str) -> "Page":
        return cls(
            id=doc["id"],
            project_id=project_id,
            name=doc.get("name") or "Untitled",
            order=int(doc.get("order") or 0),
            created_at=doc.get("createdAt"),
        )


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    target_languages: List[str] = field(default_factory=list)
    source_language: str = "en"
    theme: str = ""
    status: str = STATUS_DRAFT
    progress: int = 0
    total_rows: int = 0
    translated_rows: int = 0
    pending_review: int = 0
    owner_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 1

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "targetLanguages": list(self.target_languages),
            "sourceLanguage": self.source_language,
            "theme": self.theme,
            "status": self.status,
            "progress": self.progress,
            "totalRows": self.total_rows,
            "translatedRows": self.translated_rows,
            "pendingReview": self.pending_review,
            "ownerId": self.owner_id,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Project":
        status = normalize_status(doc.get("status"))
        if status == STATUS_CHANGES:
            status = STATUS_REVIEW
        return cls(
            id=doc["id"],
            name=doc.get("name") or "",
            description=doc.get("description") or "",
            target_languages=list(doc.get("targetLanguages") or []),
            source_language=doc.get("sourceLanguage") or "en",
            theme=doc.get("theme") or "",
            status=status,
            progress=int(doc.get("progress") or 0),
            total_rows=int(doc.get("totalRows") or 0),
            translated_rows=int(doc.get("translatedRows") or 0),
            pending_review=int(doc.get("pendingReview") or 0),
            owner_id=doc.get("ownerId"),
            created_by=doc.get("createdBy"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
            version=int(doc.get("version") or 1),
        )


@dataclass
class PromptTemplate:
    id: str
    name: str
    prompt: str
    description: str = ""
    category: str = "general"
    tags: List[str] = field(default_factory=list)
    is_default: bool = False
    status: str = TEMPLATE_DRAFT
    version: int = 1
    author: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "prompt": self.prompt,
            "category": self.category,
            "tags": list(self.tags),
            "isDefault": self.is_default,
            "status": self.status,
            "version": self.version,
            "author": self.author,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PromptTemplate":
        return cls(
            id=doc["id"],
            name=doc.get("name") or "",
            prompt=doc.get("prompt") or "",
            description=doc.get("description") or "",
            category=doc.get("category") or "general",
            tags=list(doc.get("tags") or []),
            is_default=bool(doc.get("isDefault")),
            status=doc.get("status") or TEMPLATE_DRAFT,
            version=int(doc.get("version") or 1),
            author=doc.get("author"),
            created_by=doc.get("createdBy"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )


# Old glossary documents used language names instead of codes
_GLOSSARY_LEGACY_FIELDS = {"my": ("my", "malay"), "zh": ("zh", "cn", "chinese")}


@dataclass
class GlossaryTerm:
    id: str
    english: str
    translations: Dict[str, str] = field(default_factory=dict)
    category: str = ""
    remark: str = ""
    status: str = STATUS_DRAFT
    version: int = 1
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "english": self.english,
            "translations": dict(self.translations),
            "category": self.category,
            "remark": self.remark,
            "status": self.status,
            "version": self.version,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def as_prompt_term(self) -> Dict[str, Any]:
        return {"english": self.english, "translations": dict(self.translations)}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "GlossaryTerm":
        translations = dict(doc.get("translations") or {})
        for code, names in _GLOSSARY_LEGACY_FIELDS.items():
            if translations.get(code):
                continue
            for name in names:
                if doc.get(name):
                    translations[code] = doc[name]
                    break
        status = doc.get("status") or STATUS_DRAFT
        return cls(
            id=doc["id"],
            english=doc.get("english") or doc.get("en") or "",
            translations=translations,
            category=doc.get("category") or "",
            remark=doc.get("remark") or "",
            status=status if status in PROJECT_STATUSES else STATUS_DRAFT,
            version=int(doc.get("version") or 1),
            created_by=doc.get("createdBy"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )


@dataclass
class GlossaryCategory:
    id: str
    name: str
    color: str = "slate"

    def to_document(self) -> Dict[str, Any]:
        return {"name": self.name, "color": self.color}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "GlossaryCategory":
        return cls(id=doc["id"], name=doc.get("name") or "", color=doc.get("color") or "slate")


@dataclass
class User:
    id: str
    email: str
    display_name: str = ""
    role: str = "viewer"
    languages: List[str] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "displayName": self.display_name,
            "role": self.role,
            "languages": list(self.languages),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "User":
        return cls(
            id=doc["id"],
            email=doc.get("email") or "",
            display_name=doc.get("displayName") or "",
            role=doc.get("role") or "viewer",
            languages=list(doc.get("languages") or []),
        )


@dataclass
class AuditEntry:
    id: str
    user_id: str
    user_email: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    project_id: Optional[str] = None
    content: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=doc["id"],
            user_id=doc.get("userId") or "",
            user_email=doc.get("userEmail") or "",
            action=doc.get("action") or "",
            entity_type=doc.get("entityType") or "",
            entity_id=doc.get("entityId"),
            project_id=doc.get("projectId"),
            content=dict(doc.get("content") or {}),
            metadata=dict(doc.get("metadata") or {}),
            created_at=doc.get("createdAt"),
        )
