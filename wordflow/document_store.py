"""
Async document store interface and its in-process implementations.

Collections are addressed by slash-separated paths
(``projects/<pid>/pages/<page>/rows``). Deleting a document never touches the
collections nested under it; callers cascade explicitly.
"""
import copy
import json
import logging
import os
import uuid
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from wordflow.errors import BatchLimitExceededError, DocumentNotFoundError, StoreError

logger = logging.getLogger(__name__)

MAX_BATCH_ITEMS = 500

PROJECTS = "projects"
PROMPT_TEMPLATES = "prompt_templates"
GLOSSARY_TERMS = "glossary_terms"
GLOSSARY_CATEGORIES = "glossary_categories"
USERS = "users"
AUDIT_LOGS = "audit_logs"

Filter = Tuple[str, str, Any]


def pages_path(project_id: str) -> str:
    return f"{PROJECTS}/{project_id}/pages"


def page_rows_path(project_id: str, page_id: str) -> str:
    return f"{PROJECTS}/{project_id}/pages/{page_id}/rows"


def legacy_rows_path(project_id: str) -> str:
    return f"{PROJECTS}/{project_id}/rows"


def rows_path(project_id: str, page_id: Optional[str]) -> str:
    return page_rows_path(project_id, page_id) if page_id else legacy_rows_path(project_id)


def parse_rows_path(path: str) -> Tuple[str, str]:
    """Return ``(project_id, page_id)`` for a rows collection path; page_id is empty for legacy rows."""
    parts = path.split("/")
    if len(parts) == 5 and parts[0] == PROJECTS and parts[2] == "pages" and parts[4] == "rows":
        return parts[1], parts[3]
    if len(parts) == 3 and parts[0] == PROJECTS and parts[2] == "rows":
        return parts[1], ""
    raise ValueError(f"Not a rows collection path: {path}")


def chunked(items: Sequence[Any], size: int) -> Iterator[List[Any]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError("Chunk size must be positive.")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def new_document_id() -> str:
    return uuid.uuid4().hex


def _get_field(doc: Dict[str, Any], dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _set_field(doc: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    target = doc
    for part in parts[:-1]:
        nested = target.get(part)
        if not isinstance(nested, dict):
            nested = {}
            target[part] = nested
        target = nested
    target[parts[-1]] = copy.deepcopy(value)


def _matches(doc: Dict[str, Any], filters: Iterable[Filter]) -> bool:
    for field_name, op, expected in filters:
        actual = _get_field(doc, field_name)
        if op == "==":
            ok = actual == expected
        elif op == "!=":
            ok = actual != expected
        elif op == "in":
            ok = actual in expected
        elif op == "array_contains":
            ok = isinstance(actual, list) and expected in actual
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
        if not ok:
            return False
    return True


def _sort_key(field_name: str):
    def key(doc: Dict[str, Any]):
        value = _get_field(doc, field_name)
        return (value is not None, value if value is not None else 0)
    return key


class WriteBatch:
    """Collects writes and applies them with a single commit."""

    def __init__(self, store: "DocumentStore", max_items: int):
        self._store = store
        self._max_items = max_items
        self._ops: List[Tuple[str, str, str, Optional[Dict[str, Any]]]] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("set", collection, doc_id, data))
        return self

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("update", collection, doc_id, fields))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(("delete", collection, doc_id, None))
        return self

    async def commit(self) -> None:
        if self._committed:
            raise StoreError("Write batch was already committed.")
        if len(self._ops) > self._max_items:
            raise BatchLimitExceededError(len(self._ops), self._max_items)
        self._committed = True
        await self._store._apply_batch(self._ops)


class DocumentStore:
    """Interface consumed by the workflow services."""

    max_batch_items = MAX_BATCH_ITEMS

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def query(self, collection: str, filters: Optional[List[Filter]] = None,
                    order_by: Optional[str] = None, descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def query_group(self, collection_id: str, filters: Optional[List[Filter]] = None,
                          order_by: Optional[str] = None,
                          descending: bool = False) -> List[Tuple[str, Dict[str, Any]]]:
        raise NotImplementedError

    async def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        raise NotImplementedError

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    async def _apply_batch(self, ops) -> None:
        raise NotImplementedError

    def batch(self) -> WriteBatch:
        return WriteBatch(self, self.max_batch_items)


class MemoryDocumentStore(DocumentStore):
    """
    Document store held in process memory.

    Documents are deep-copied on the way in and out so callers never share
    state with the store.
    """

    def __init__(self, collections: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None,
                 max_batch_items: int = MAX_BATCH_ITEMS):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = copy.deepcopy(collections or {})
        self.max_batch_items = max_batch_items

    def _with_id(self, doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        result = copy.deepcopy(doc)
        result["id"] = doc_id
        return result

    def collection_paths(self) -> List[str]:
        return [path for path, docs in self._collections.items() if docs]

    async def get(self, collection, doc_id):
        doc = self._collections.get(collection, {}).get(doc_id)
        return self._with_id(doc_id, doc) if doc is not None else None

    async def query(self, collection, filters=None, order_by=None, descending=False, limit=None):
        docs = [self._with_id(doc_id, doc)
                for doc_id, doc in self._collections.get(collection, {}).items()
                if _matches(doc, filters or [])]
        if order_by:
            docs.sort(key=_sort_key(order_by), reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def query_group(self, collection_id, filters=None, order_by=None, descending=False):
        results = []
        for path, docs in self._collections.items():
            if path.split("/")[-1] != collection_id:
                continue
            for doc_id, doc in docs.items():
                if _matches(doc, filters or []):
                    results.append((path, self._with_id(doc_id, doc)))
        if order_by:
            key = _sort_key(order_by)
            results.sort(key=lambda item: key(item[1]), reverse=descending)
        return results

    def _store_doc(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        clean = copy.deepcopy(data)
        clean.pop("id", None)
        self._collections.setdefault(collection, {})[doc_id] = clean

    def _update_doc(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(collection, doc_id)
        for key, value in fields.items():
            _set_field(doc, key, value)

    async def create(self, collection, data, doc_id=None):
        doc_id = doc_id or new_document_id()
        self._store_doc(collection, doc_id, data)
        return doc_id

    async def set(self, collection, doc_id, data):
        self._store_doc(collection, doc_id, data)

    async def update(self, collection, doc_id, fields):
        self._update_doc(collection, doc_id, fields)

    async def delete(self, collection, doc_id):
        self._collections.get(collection, {}).pop(doc_id, None)

    async def _apply_batch(self, ops):
        # Updates against missing documents fail the whole batch before anything is applied
        pending_sets = {(collection, doc_id) for op, collection, doc_id, _ in ops if op == "set"}
        for op, collection, doc_id, _ in ops:
            if op == "update" and (collection, doc_id) not in pending_sets \
                    and doc_id not in self._collections.get(collection, {}):
                raise DocumentNotFoundError(collection, doc_id)
        for op, collection, doc_id, data in ops:
            if op == "set":
                self._store_doc(collection, doc_id, data)
            elif op == "update":
                self._update_doc(collection, doc_id, data)
            else:
                self._collections.get(collection, {}).pop(doc_id, None)


class JsonFileDocumentStore(MemoryDocumentStore):
    """Memory store that rewrites a JSON file after every successful write."""

    def __init__(self, file_path: str, max_batch_items: int = MAX_BATCH_ITEMS):
        self.file_path = file_path
        super().__init__(self._read_file(file_path), max_batch_items)

    @staticmethod
    def _read_file(file_path: str) -> Dict[str, Dict[str, Dict[str, Any]]]:
        if not os.path.exists(file_path):
            return {}
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Could not read store file '{file_path}': {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Store file '{file_path}' must contain a JSON object.")
        return data

    def _persist(self) -> None:
        directory = os.path.dirname(self.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        temp_path = f"{self.file_path}.tmp"
        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(self._collections, f, ensure_ascii=False, indent=2)
            os.replace(temp_path, self.file_path)
        except OSError as e:
            raise StoreError(f"Could not write store file '{self.file_path}': {e}") from e
        logger.debug("Persisted store to %s", self.file_path)

    async def create(self, collection, data, doc_id=None):
        doc_id = await super().create(collection, data, doc_id)
        self._persist()
        return doc_id

    async def set(self, collection, doc_id, data):
        await super().set(collection, doc_id, data)
        self._persist()

    async def update(self, collection, doc_id, fields):
        await super().update(collection, doc_id, fields)
        self._persist()

    async def delete(self, collection, doc_id):
        await super().delete(collection, doc_id)
        self._persist()

    async def _apply_batch(self, ops):
        await super()._apply_batch(ops)
        self._persist()
