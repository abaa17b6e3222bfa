"""
Provider matching and new-request broadcast.

Provider profiles carry their categories in two shapes: the older scalar
`service_type` field and the newer `services` array. Both are queried until
the data is migrated; the two lookups live in the adapter section below so
they can be removed without touching callers.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from database import DocumentStore
from notifications import notify_safely
from schemas import PROVIDER_ROLES, RequestStatus
from users import USERS

logger = logging.getLogger(__name__)


# ---------------------------
# Category field adapter
# ---------------------------

def _providers_by_service_type_field(store: DocumentStore, service_type: str) -> List[Dict[str, Any]]:
    return store.get_documents(USERS, {"role": {"$in": list(PROVIDER_ROLES)}, "service_type": service_type})


def _providers_by_services_array(store: DocumentStore, service_type: str) -> List[Dict[str, Any]]:
    # Equality against an array field matches any element.
    return store.get_documents(USERS, {"role": {"$in": list(PROVIDER_ROLES)}, "services": service_type})


CATEGORY_LOOKUPS = (_providers_by_service_type_field, _providers_by_services_array)


# ---------------------------
# Matching
# ---------------------------

def _area_of(provider: Dict[str, Any]) -> str:
    return str(provider.get("service_area") or provider.get("city") or "").lower()


def filter_by_area(providers: Iterable[Dict[str, Any]], area: Optional[str]) -> List[Dict[str, Any]]:
    providers = list(providers)
    if not area:
        return providers
    wanted = str(area).lower()
    # Providers without any area field stay in.
    return [p for p in providers if not _area_of(p) or wanted in _area_of(p)]


def get_matching_providers(store: DocumentStore, service_type: str, area: Optional[str] = None) -> List[Dict[str, Any]]:
    try:
        by_id: Dict[str, Dict[str, Any]] = {}
        for lookup in CATEGORY_LOOKUPS:
            try:
                for provider in lookup(store, service_type):
                    by_id[provider["id"]] = provider
            except Exception:
                logger.warning("%s failed for %s", lookup.__name__, service_type, exc_info=True)
        return filter_by_area(by_id.values(), area)
    except Exception:
        logger.exception("Provider matching failed for %s", service_type)
        return []


def broadcast_new_request(store: DocumentStore, request: Dict[str, Any]) -> int:
    """Notify each matching provider about a new request. Returns how many were notified."""
    service_type = request.get("service_type")
    if not service_type:
        return 0
    area = (request.get("location") or {}).get("address")
    providers = get_matching_providers(store, service_type, area)
    notified = 0
    for provider in providers:
        if provider["id"] == request.get("created_by"):
            continue
        sent = notify_safely(store, provider["id"], "NEW_REQUEST_AVAILABLE", {
            "requestId": request["id"],
            "requestTitle": request.get("title") or "Service Request",
            "serviceType": service_type,
        })
        if sent is not None:
            notified += 1
    logger.info("Broadcast request %s to %d of %d matching providers", request["id"], notified, len(providers))
    return notified


def is_assigned_to(request: Dict[str, Any], provider_id: str) -> bool:
    accepted = request.get("accepted_quote") or {}
    return request.get("provider_id") == provider_id or accepted.get("provider_id") == provider_id


def filter_open_requests_for_provider(requests: Iterable[Dict[str, Any]], provider_id: str,
                                      service_type: Optional[str] = None,
                                      service_area: Optional[str] = None) -> List[Dict[str, Any]]:
    """Requests a provider may see: unassigned or assigned to them, matching type and area."""
    area = str(service_area or "").lower()
    visible = []
    for req in requests:
        accepted = req.get("accepted_quote") or {}
        assigned = bool(req.get("provider_assigned") or req.get("provider_id")
                        or req.get("accepted_quote_id") or accepted.get("provider_id"))
        mine = is_assigned_to(req, provider_id)
        if assigned and not mine:
            continue
        if req.get("status") == RequestStatus.IN_PROGRESS and not mine:
            continue
        if service_type and req.get("service_type") != service_type:
            continue
        address = str((req.get("location") or {}).get("address") or "").lower()
        if area and area not in address:
            continue
        visible.append(req)
    return visible
