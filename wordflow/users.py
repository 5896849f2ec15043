"""User directory: roles and the languages each manager reviews."""
import logging
from typing import List, Optional

from wordflow.audit import AuditAction, AuditLog
from wordflow.document_store import USERS, DocumentStore, new_document_id
from wordflow.errors import StoreError
from wordflow.models import User
from wordflow.notifications import Notifier
from wordflow.permissions import ROLE_ADMIN, ROLE_MANAGER, ROLES, Action, require

logger = logging.getLogger(__name__)


class UserDirectory:
    def __init__(self, store: DocumentStore, notifier: Notifier, audit: Optional[AuditLog] = None, user=None):
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.user = user

    async def list_users(self) -> List[User]:
        try:
            docs = await self.store.query(USERS, order_by="email")
        except StoreError as e:
            logger.error("Failed to load users: %s", e)
            self.notifier.error("Could not load users.")
            return []
        return [User.from_document(doc) for doc in docs]

    async def get_user(self, user_id: str) -> Optional[User]:
        try:
            doc = await self.store.get(USERS, user_id)
        except StoreError as e:
            logger.error("Failed to load user %s: %s", user_id, e)
            return None
        return User.from_document(doc) if doc else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        try:
            docs = await self.store.query(USERS, [("email", "==", (email or "").lower())], limit=1)
        except StoreError as e:
            logger.error("Failed to look up user %s: %s", email, e)
            return None
        return User.from_document(docs[0]) if docs else None

    async def upsert_user(self, email: str, display_name: str = "", role: str = "viewer",
                          languages: Optional[List[str]] = None, user_id: Optional[str] = None) -> Optional[User]:
        existing = await self.get_user_by_email(email)
        user = User(
            id=user_id or (existing.id if existing else new_document_id()),
            email=(email or "").lower(),
            display_name=display_name or (existing.display_name if existing else ""),
            role=role if role in ROLES else "viewer",
            languages=list(languages if languages is not None else (existing.languages if existing else [])),
        )
        try:
            await self.store.set(USERS, user.id, user.to_document())
        except StoreError as e:
            logger.error("Failed to save user %s: %s", email, e)
            self.notifier.error("Failed to save user.")
            return None
        return user

    async def _update(self, user_id: str, fields: dict, description: str) -> bool:
        require(self.user, Action.MANAGE_USERS)
        before = await self.get_user(user_id)
        try:
            await self.store.update(USERS, user_id, fields)
        except StoreError as e:
            logger.error("Failed to update %s of user %s: %s", description, user_id, e)
            self.notifier.error(f"Failed to update {description}.")
            return False
        if self.audit is not None:
            await self.audit.log_action(self.user, AuditAction.USER_UPDATED, "user", user_id,
                                        before=before.to_document() if before else None, after=fields)
        return True

    async def update_role(self, user_id: str, role: str) -> bool:
        if role not in ROLES:
            raise ValueError(f"Unknown role '{role}'")
        return await self._update(user_id, {"role": role}, "role")

    async def update_languages(self, user_id: str, languages: List[str]) -> bool:
        return await self._update(user_id, {"languages": list(languages)}, "languages")

    async def delete_user(self, user_id: str) -> bool:
        require(self.user, Action.MANAGE_USERS)
        try:
            await self.store.delete(USERS, user_id)
        except StoreError as e:
            logger.error("Failed to delete user %s: %s", user_id, e)
            self.notifier.error("Failed to delete user.")
            return False
        return True

    async def list_managers(self, exclude_id: Optional[str] = None) -> List[User]:
        """Users who can review translations, for reviewer assignment."""
        return [u for u in await self.list_users()
                if u.role in (ROLE_ADMIN, ROLE_MANAGER) and u.id != exclude_id]
