"""Wiring of config, store, provider and services into one object graph."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from aiolimiter import AsyncLimiter

from wordflow.ai_providers import TranslationProvider, create_provider
from wordflow.app_config import AppConfig
from wordflow.approvals import ApprovalWorkflow
from wordflow.audit import AuditLog
from wordflow.document_store import DocumentStore, JsonFileDocumentStore, MemoryDocumentStore
from wordflow.glossary import GlossaryLibrary
from wordflow.models import User
from wordflow.notifications import Notifier
from wordflow.pages import PageAggregate
from wordflow.row_store import RowStore
from wordflow.sync import StorePoller
from wordflow.templates import TemplateLibrary
from wordflow.translation_queue import TranslationQueue
from wordflow.users import UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: AppConfig
    store: DocumentStore
    notifier: Notifier
    audit: AuditLog
    provider: TranslationProvider
    user: Optional[User]
    row_store: RowStore
    pages: PageAggregate
    templates: TemplateLibrary
    glossary: GlossaryLibrary
    users: UserDirectory
    queue: TranslationQueue
    approvals: ApprovalWorkflow
    poller: StorePoller

    def set_user(self, user: Optional[User]) -> None:
        """Act as ``user`` from now on in every service."""
        self.user = user
        for service in (self.row_store, self.templates, self.glossary, self.users, self.queue, self.approvals):
            service.user = user


def create_store(config: AppConfig) -> DocumentStore:
    if config.store_backend == "json":
        logger.info("Using JSON file store at %s", config.store_path)
        return JsonFileDocumentStore(config.store_path, max_batch_items=config.max_batch_items)
    logger.info("Using in-memory store")
    return MemoryDocumentStore(max_batch_items=config.max_batch_items)


def build_app_context(config: AppConfig, store: Optional[DocumentStore] = None,
                      provider: Optional[TranslationProvider] = None,
                      user: Optional[User] = None, notifier: Optional[Notifier] = None) -> AppContext:
    """
    Construct every service once and share the store, notifier and audit log.

    Args:
        config: Loaded application config.
        store: Store to use instead of the one selected by ``config.store_backend``.
        provider: Provider to use instead of the one selected by ``config.ai_provider``.
        user: Acting user; use ``resolve_current_user`` to look one up by email.
        notifier: Notification channel; a fresh one when omitted.
    """
    store = store or create_store(config)
    notifier = notifier or Notifier()
    audit = AuditLog(store)
    if provider is None:
        provider = create_provider(config.ai_provider, config,
                                   asyncio.Semaphore(config.max_concurrent_api_calls),
                                   AsyncLimiter(config.rate_limit_per_minute, 60))

    row_store = RowStore(store, notifier, audit, user, write_chunk_size=config.write_chunk_size,
                         default_target_languages=config.default_target_languages)
    pages = PageAggregate(row_store)
    templates = TemplateLibrary(store, notifier, audit, user)
    glossary = GlossaryLibrary(store, notifier, audit, user, write_chunk_size=config.write_chunk_size)
    users = UserDirectory(store, notifier, audit, user)
    queue = TranslationQueue(row_store, pages, provider, templates, glossary, notifier, audit, user,
                             batch_size=config.translation_batch_size, source_language=config.source_language)
    approvals = ApprovalWorkflow(row_store, glossary, notifier, audit, user)
    poller = StorePoller(row_store, config.poll_interval_seconds)

    return AppContext(
        config=config,
        store=store,
        notifier=notifier,
        audit=audit,
        provider=provider,
        user=user,
        row_store=row_store,
        pages=pages,
        templates=templates,
        glossary=glossary,
        users=users,
        queue=queue,
        approvals=approvals,
        poller=poller,
    )


async def resolve_current_user(context: AppContext) -> Optional[User]:
    """Look up ``config.current_user_email`` and act as that user when found."""
    email = context.config.current_user_email
    if not email:
        logger.warning("No current user configured; set WORDFLOW_USER_EMAIL to act as a user.")
        return None
    user = await context.users.get_user_by_email(email)
    if user is None:
        logger.warning("User %s not found in the store.", email)
        return None
    context.set_user(user)
    logger.info("Acting as %s (%s)", user.email, user.role)
    return user
