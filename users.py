import logging
from typing import Any, Dict, Iterable, List, Optional

from database import DocumentStore
from errors import NotFound
from schemas import PROVIDER_ROLES

logger = logging.getLogger(__name__)

USERS = "users"

# Fields a user may change on their own profile. Roles, tokens and ratings are
# written by other parts of the system.
PROFILE_FIELDS = {
    "display_name",
    "company_name",
    "phone_number",
    "service_type",
    "services",
    "service_area",
    "city",
    "preferences",
    "address",
}


def get_user(store: DocumentStore, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    return store.get_document(USERS, user_id)


def get_user_by_token(store: DocumentStore, token: str) -> Optional[Dict[str, Any]]:
    return store.find_one(USERS, {"tokens": token})


def display_name(user: Optional[Dict[str, Any]], fallback: str, prefer_company: bool = False) -> str:
    if not user:
        return fallback
    if prefer_company and user.get("company_name"):
        return user["company_name"]
    return user.get("display_name") or user.get("company_name") or fallback


def is_provider(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") in PROVIDER_ROLES


def update_user_profile(store: DocumentStore, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    allowed = {k: v for k, v in updates.items() if k in PROFILE_FIELDS}
    ignored = set(updates) - set(allowed)
    if ignored:
        logger.info("Ignoring non-profile fields %s for user %s", sorted(ignored), user_id)
    user = store.update_document(USERS, user_id, allowed)
    if user is None:
        raise NotFound("User", user_id)
    return user


def register_push_token(store: DocumentStore, user_id: str, token: str) -> Dict[str, Any]:
    user = store.update_document(USERS, user_id, add_to_set={"fcm_tokens": token})
    if user is None:
        raise NotFound("User", user_id)
    return user


def remove_push_token(store: DocumentStore, user_id: str, token: str) -> Dict[str, Any]:
    user = store.update_document(USERS, user_id, pull={"fcm_tokens": token})
    if user is None:
        raise NotFound("User", user_id)
    return user


def push_tokens_for(store: DocumentStore, user_ids: Iterable[str]) -> List[str]:
    """Union of registered push tokens for the given users, first-seen order."""
    seen: Dict[str, None] = {}
    for uid in user_ids:
        user = get_user(store, uid)
        if not user:
            continue
        for token in user.get("fcm_tokens") or []:
            if token and isinstance(token, str):
                seen.setdefault(token, None)
    return list(seen)
