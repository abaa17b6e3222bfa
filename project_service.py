import logging
from typing import Any, Callable, Dict, List, Optional

from database import DocumentStore, NEWEST_FIRST, Subscription, UnitOfWork, now_utc
from errors import InvalidState, NotFound, PermissionDenied
from notifications import notify_safely
from schemas import Project, ProjectComment, ProjectPhoto, ProjectStatus
from users import USERS

logger = logging.getLogger(__name__)

PROJECTS = "projects"

# Status, budget and ownership only change through acceptance and payment.
PROTECTED_FIELDS = {
    "id", "_id", "status", "request_id", "quote_id", "provider_id", "client_id", "order_giver_id",
    "budget", "currency", "photos", "comments", "started_at", "completed_at", "created_at",
}


def create_project_for_quote(uow: UnitOfWork, quote: Dict[str, Any], request: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create the project for an accepted quote inside the caller's unit of work.

    The budget is a snapshot of the quote amount at acceptance time. A quote
    that already has a project gets that project back unchanged.
    """
    existing = uow.find(PROJECTS, {"quote_id": quote["id"]})
    if existing:
        return existing[0]

    owner_id = request.get("created_by") or request.get("order_giver_id")
    doc = Project(
        request_id=request["id"],
        quote_id=quote["id"],
        provider_id=quote["provider_id"],
        client_id=owner_id,
        order_giver_id=owner_id,
        title=request.get("title") or "",
        description=request.get("description") or "",
        service_type=request.get("service_type"),
        location=request.get("location"),
        budget=float(quote.get("amount") or 0),
        currency=quote.get("currency") or request.get("currency") or "EUR",
        started_at=now_utc(),
    ).model_dump()
    project_id = uow.create(PROJECTS, doc)
    if owner_id and uow.get(USERS, owner_id):
        uow.update(USERS, owner_id, add_to_set={"projects": project_id})
    return uow.require(PROJECTS, project_id, "Project")


def get_project_by_id(store: DocumentStore, project_id: str) -> Dict[str, Any]:
    return store.require_document(PROJECTS, project_id, "Project")


def get_project_for_quote(store: DocumentStore, quote_id: str) -> Optional[Dict[str, Any]]:
    return store.find_one(PROJECTS, {"quote_id": quote_id})


def get_projects_for_provider(store: DocumentStore, provider_id: str,
                              status: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"provider_id": provider_id}
    if status:
        filt["status"] = status
    return store.get_documents(PROJECTS, filt, sort=NEWEST_FIRST)


def get_projects_for_order_giver(store: DocumentStore, user_id: str,
                                 status: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"$or": [{"client_id": user_id}, {"order_giver_id": user_id}]}
    if status:
        filt["status"] = status
    return store.get_documents(PROJECTS, filt, sort=NEWEST_FIRST)


def _require_mutable(store: DocumentStore, project_id: str, actor_id: Optional[str]) -> Dict[str, Any]:
    project = get_project_by_id(store, project_id)
    if actor_id is not None and project.get("provider_id") != actor_id:
        raise PermissionDenied("Only the assigned provider can update this project")
    if project.get("status") == ProjectStatus.COMPLETED:
        raise InvalidState(f"Project {project_id} is already completed")
    return project


def clamp_progress(value: Any) -> int:
    try:
        progress = int(round(float(value)))
    except (TypeError, ValueError):
        raise InvalidState(f"Progress must be a number, got {value!r}")
    return max(0, min(100, progress))


def update_project_progress(store: DocumentStore, project_id: str, progress: Any,
                            updates: Optional[Dict[str, Any]] = None,
                            actor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Store clamped progress plus any extra non-protected fields.

    Reaching 100 tells the order giver the work is done but completes
    nothing: only payment moves the project and request to completed.
    """
    _require_mutable(store, project_id, actor_id)
    changes = {k: v for k, v in (updates or {}).items() if k not in PROTECTED_FIELDS}
    changes["progress"] = clamp_progress(progress)
    updated = store.update_document(
        PROJECTS, project_id, changes, expected={"status": {"$ne": ProjectStatus.COMPLETED}}
    )
    if updated is None:
        raise InvalidState(f"Project {project_id} was completed concurrently")

    if updated["progress"] >= 100:
        notify_safely(store, updated.get("order_giver_id") or updated.get("client_id"), "REQUEST_UPDATED", {
            "requestId": updated.get("request_id"),
            "requestTitle": updated.get("title") or "Service Request",
        })
    return updated


def add_project_photo(store: DocumentStore, project_id: str, storage, filename: str, data: bytes,
                      content_type: str = "image/jpeg", actor_id: Optional[str] = None) -> Dict[str, Any]:
    _require_mutable(store, project_id, actor_id)
    # UploadFailure propagates; the project is left untouched.
    url = storage.upload(f"projects/{project_id}/{filename}", data, content_type)
    photo = ProjectPhoto(url=url, name=filename, uploaded_at=now_utc()).model_dump()
    updated = store.update_document(PROJECTS, project_id, push={"photos": photo})
    if updated is None:
        raise NotFound("Project", project_id)
    return updated


def add_project_comment(store: DocumentStore, project_id: str, text: str,
                        author_id: Optional[str] = None) -> Dict[str, Any]:
    project = get_project_by_id(store, project_id)
    if author_id is not None and author_id not in (project.get("provider_id"), project.get("order_giver_id"),
                                                   project.get("client_id")):
        raise PermissionDenied("Only project participants can comment")
    comment = ProjectComment(text=text, author_id=author_id, created_at=now_utc()).model_dump()
    updated = store.update_document(PROJECTS, project_id, push={"comments": comment})
    if updated is None:
        raise NotFound("Project", project_id)
    return updated


def subscribe_to_provider_projects(store: DocumentStore, provider_id: str,
                                   callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    return store.subscribe(PROJECTS, {"provider_id": provider_id}, callback, sort=NEWEST_FIRST)


def subscribe_to_order_giver_projects(store: DocumentStore, user_id: str,
                                      callback: Callable[[List[Dict[str, Any]]], None]) -> Subscription:
    filt = {"$or": [{"client_id": user_id}, {"order_giver_id": user_id}]}
    return store.subscribe(PROJECTS, filt, callback, sort=NEWEST_FIRST)
