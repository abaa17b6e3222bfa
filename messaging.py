import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo import DESCENDING

from database import DocumentStore, NEWEST_FIRST, Subscription, now_utc
from errors import InvalidState, NotFound, PermissionDenied
from notifications import notify_safely
from schemas import Conversation, Message
from users import display_name, get_user

logger = logging.getLogger(__name__)

CONVERSATIONS = "conversations"
MESSAGES = "messages"

PREVIEW_LENGTH = 100


def conversation_id_for(user_a: str, user_b: str) -> str:
    return "_".join(sorted([user_a, user_b]))


def get_conversation(store: DocumentStore, conversation_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    conversation = store.require_document(CONVERSATIONS, conversation_id, "Conversation")
    if user_id is not None and user_id not in conversation.get("participants", []):
        raise PermissionDenied("You are not a participant in this conversation")
    return conversation


def get_or_create_conversation(store: DocumentStore, user_id: str, other_user_id: str) -> Dict[str, Any]:
    if user_id == other_user_id:
        raise InvalidState("Cannot start a conversation with yourself")
    conversation_id = conversation_id_for(user_id, other_user_id)
    existing = store.get_document(CONVERSATIONS, conversation_id)
    if existing:
        return existing
    doc = Conversation(
        participants=[user_id, other_user_id],
        unread_count={user_id: 0, other_user_id: 0},
    ).model_dump()
    store.create_document(CONVERSATIONS, doc, doc_id=conversation_id)
    return store.get_document(CONVERSATIONS, conversation_id)


def send_message(store: DocumentStore, conversation_id: str, sender_id: str, text: str,
                 request_id: Optional[str] = None,
                 attachments: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    conversation = get_conversation(store, conversation_id, sender_id)
    doc = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        text=text,
        request_id=request_id,
        read_by=[sender_id],
        attachments=list(attachments or []),
    ).model_dump()
    message_id = store.create_document(MESSAGES, doc)

    others = [p for p in conversation.get("participants", []) if p != sender_id]
    sent_at = now_utc()
    store.update_document(
        CONVERSATIONS, conversation_id,
        {
            "last_message": {"text": text, "sender_id": sender_id, "sent_at": sent_at},
            "last_message_at": sent_at,
            f"unread_count.{sender_id}": 0,
        },
        inc={f"unread_count.{uid}": 1 for uid in others},
    )

    sender_name = display_name(get_user(store, sender_id), "Someone")
    for uid in others:
        notify_safely(store, uid, "NEW_MESSAGE", {
            "senderName": sender_name,
            "message": text[:PREVIEW_LENGTH],
            "conversationId": conversation_id,
            "senderId": sender_id,
        })
    return store.get_document(MESSAGES, message_id)


def get_messages(store: DocumentStore, conversation_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Latest `limit` messages, oldest first."""
    latest = store.get_documents(MESSAGES, {"conversation_id": conversation_id}, sort=NEWEST_FIRST, limit=limit)
    return list(reversed(latest))


def mark_messages_as_read(store: DocumentStore, conversation_id: str, user_id: str) -> Dict[str, Any]:
    get_conversation(store, conversation_id, user_id)
    unread = store.get_documents(MESSAGES, {"conversation_id": conversation_id, "read_by": {"$ne": user_id}})
    for message in unread:
        store.update_document(MESSAGES, message["id"], add_to_set={"read_by": user_id})
    conversation = store.update_document(CONVERSATIONS, conversation_id, {f"unread_count.{user_id}": 0})
    if conversation is None:
        raise NotFound("Conversation", conversation_id)
    return conversation


def get_user_conversations(store: DocumentStore, user_id: str) -> List[Dict[str, Any]]:
    return store.get_documents(CONVERSATIONS, {"participants": user_id}, sort=[("last_message_at", DESCENDING)])


def unread_total(conversations: List[Dict[str, Any]], user_id: str) -> int:
    return sum(int((c.get("unread_count") or {}).get(user_id, 0)) for c in conversations)


def subscribe_to_conversation_messages(store: DocumentStore, conversation_id: str,
                                       callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    def deliver(snapshot: List[Dict[str, Any]]) -> None:
        callback(list(reversed(snapshot)))

    return store.subscribe(MESSAGES, {"conversation_id": conversation_id}, deliver, sort=NEWEST_FIRST, limit=50)
