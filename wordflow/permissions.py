"""Role-based capability table."""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from wordflow.errors import PermissionDeniedError

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_EDITOR = "editor"
ROLE_VIEWER = "viewer"
ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_EDITOR, ROLE_VIEWER)

# Lowest to highest
_HIERARCHY = (ROLE_VIEWER, ROLE_EDITOR, ROLE_MANAGER, ROLE_ADMIN)


class Action(str, Enum):
    MANAGE_USERS = "manage_users"
    MANAGE_CATEGORIES = "manage_categories"
    CONFIGURE_SETTINGS = "configure_settings"
    APPROVE_TRANSLATION = "approve_translation"
    REJECT_TRANSLATION = "reject_translation"
    ASSIGN_REVIEWER = "assign_reviewer"
    CREATE_PROJECT = "create_project"
    EDIT_PROJECT = "edit_project"
    DELETE_PROJECT = "delete_project"
    TRANSLATE = "translate"
    CREATE_GLOSSARY = "create_glossary"
    EDIT_GLOSSARY = "edit_glossary"
    DELETE_GLOSSARY = "delete_glossary"
    CREATE_PROMPT = "create_prompt"
    EDIT_PROMPT = "edit_prompt"
    DELETE_PROMPT = "delete_prompt"
    VIEW_PROJECT = "view_project"
    VIEW_GLOSSARY = "view_glossary"
    VIEW_PROMPT = "view_prompt"


_VIEW_ACTIONS = frozenset({Action.VIEW_PROJECT, Action.VIEW_GLOSSARY, Action.VIEW_PROMPT})
_CONTENT_ACTIONS = _VIEW_ACTIONS | frozenset({
    Action.CREATE_PROJECT,
    Action.EDIT_PROJECT,
    Action.DELETE_PROJECT,
    Action.TRANSLATE,
    Action.CREATE_GLOSSARY,
    Action.EDIT_GLOSSARY,
    Action.DELETE_GLOSSARY,
    Action.CREATE_PROMPT,
    Action.EDIT_PROMPT,
    Action.DELETE_PROMPT,
})

PERMISSIONS: Dict[str, FrozenSet[Action]] = {
    ROLE_ADMIN: frozenset(Action),
    ROLE_MANAGER: frozenset(Action) - {Action.MANAGE_USERS},
    ROLE_EDITOR: _CONTENT_ACTIONS,
    ROLE_VIEWER: _VIEW_ACTIONS,
}

_LABELS = {
    ROLE_ADMIN: "Admin",
    ROLE_MANAGER: "Manager",
    ROLE_EDITOR: "Editor",
    ROLE_VIEWER: "Viewer",
}


def can_do(role: Optional[str], action: Action) -> bool:
    return action in PERMISSIONS.get(role or "", frozenset())


def is_at_least(role: Optional[str], minimum_role: str) -> bool:
    if role not in _HIERARCHY or minimum_role not in _HIERARCHY:
        return False
    return _HIERARCHY.index(role) >= _HIERARCHY.index(minimum_role)


def require(user, action: Action) -> None:
    """Raise PermissionDeniedError unless ``user`` may perform ``action``."""
    role = getattr(user, "role", None)
    if not can_do(role, action):
        raise PermissionDeniedError(role, action.value)


def role_label(role: Optional[str]) -> str:
    return _LABELS.get(role or "", "Unknown")
