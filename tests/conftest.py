import logging
from typing import Any, Dict, List

import pytest

from wordflow.ai_providers import BatchOptions, TranslationProvider
from wordflow.app_config import AppConfig
from wordflow.approvals import ApprovalWorkflow
from wordflow.audit import AuditLog
from wordflow.document_store import MemoryDocumentStore
from wordflow.glossary import GlossaryLibrary
from wordflow.models import User, STATUS_DRAFT
from wordflow.notifications import Notifier
from wordflow.pages import PageAggregate
from wordflow.prompts import RESULT_OK
from wordflow.row_store import RowStore
from wordflow.templates import TemplateLibrary
from wordflow.translation_queue import TranslationQueue


class RecordingProvider(TranslationProvider):
    """
    Provider double: records every batch and returns '<lang>:<text>' translations.

    Set ``fail_with`` to raise it from every batch, or only from batches
    containing one of ``failing_texts`` when that set is non-empty.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail_with = None
        self.failing_texts = set()

    async def generate_batch(self, items: List[Dict[str, Any]], options: BatchOptions) -> List[Dict[str, Any]]:
        self.calls.append({"items": list(items), "options": options})
        if self.fail_with is not None and (
                not self.failing_texts or any(item["text"] in self.failing_texts for item in items)):
            raise self.fail_with
        return [
            {
                "id": item["id"],
                "translations": {lang: {"text": f"{lang}:{item['text']}", "status": STATUS_DRAFT}
                                 for lang in options.target_languages},
                "status": RESULT_OK,
            }
            for item in items
        ]

    async def test_connection(self):
        return {"success": True, "message": "ok"}


@pytest.fixture(autouse=True)
def propagate_package_logs():
    """Keep wordflow log records visible to caplog even if a test configured the logger."""
    logger = logging.getLogger("wordflow")
    previous = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = previous


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def audit(store):
    return AuditLog(store)


@pytest.fixture
def admin_user():
    return User(id="u-admin", email="admin@example.com", display_name="Admin", role="admin")


@pytest.fixture
def manager_my():
    return User(id="u-mgr-my", email="aminah@example.com", display_name="Aminah", role="manager", languages=["my"])


@pytest.fixture
def manager_zh():
    return User(id="u-mgr-zh", email="wei@example.com", display_name="Wei", role="manager", languages=["zh"])


@pytest.fixture
def editor_user():
    return User(id="u-editor", email="editor@example.com", display_name="Editor", role="editor")


@pytest.fixture
def viewer_user():
    return User(id="u-viewer", email="viewer@example.com", display_name="Viewer", role="viewer")


@pytest.fixture
def row_store(store, notifier, audit, editor_user):
    return RowStore(store, notifier, audit, editor_user, write_chunk_size=400,
                    default_target_languages=["my", "zh"])


@pytest.fixture
def pages(row_store):
    return PageAggregate(row_store)


@pytest.fixture
def templates(store, notifier, audit, editor_user):
    return TemplateLibrary(store, notifier, audit, editor_user)


@pytest.fixture
def glossary(store, notifier, audit, editor_user):
    return GlossaryLibrary(store, notifier, audit, editor_user)


@pytest.fixture
def fake_provider():
    return RecordingProvider()


@pytest.fixture
def queue(row_store, pages, fake_provider, templates, glossary, notifier, audit, editor_user):
    return TranslationQueue(row_store, pages, fake_provider, templates, glossary, notifier, audit,
                            editor_user, batch_size=50)


@pytest.fixture
def approvals(row_store, glossary, notifier, audit, editor_user):
    return ApprovalWorkflow(row_store, glossary, notifier, audit, editor_user)


@pytest.fixture
def app_config():
    return AppConfig(
        project_root="/test/root",
        store_backend="memory",
        store_path="/test/root/data/wordflow.json",
        ai_provider="dry_run",
        model_name="gpt-4o-mini",
        ilmuchat_base_url="https://api.ilmu.ai/v1",
        ilmuchat_model_name="ilmu-text",
        dry_run=True,
        max_concurrent_api_calls=1,
        rate_limit_per_minute=60,
        translation_batch_size=50,
        glossary_token_budget=1500,
        write_chunk_size=400,
        max_batch_items=500,
        poll_interval_seconds=30.0,
        source_language="en",
        default_target_languages=["my", "zh"],
        language_codes={"en": "English", "my": "Bahasa Malaysia", "zh": "Chinese"},
        name_to_code={"english": "en", "bahasa malaysia": "my", "chinese": "zh"},
    )
