import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any

from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from config import Settings, configure_logging, get_settings
from contexts import OrderGiverContext, ProviderContext
from database import DocumentStore
from errors import AuthRequired, MarketplaceError, PaymentFailure, PermissionDenied
from invoice_service import (
    create_invoice_for_accepted_quote, get_invoice_by_id, get_invoices_for_order_giver, get_invoices_for_project,
    get_invoices_for_provider, get_invoices_for_request,
)
from matching import filter_open_requests_for_provider, get_matching_providers, is_assigned_to
from messaging import (
    get_conversation, get_messages, get_or_create_conversation, get_user_conversations, mark_messages_as_read,
    send_message, unread_total,
)
from notifications import get_user_notifications, mark_all_notifications_as_read, mark_notification_as_read
from payments import PaymentGateway, handle_payment_success
from project_service import (
    add_project_comment, get_project_by_id, get_projects_for_order_giver, get_projects_for_provider,
)
from push import FCMPushSender, register_push_forwarding
from quote_service import (
    get_quote_by_id, get_quotes_for_provider, get_quotes_for_request, get_quotes_for_user, reject_quote,
)
from request_service import REQUESTS, complete_request, get_request_by_id, get_user_requests, update_request
from schemas import PRIORITIES, Contact, Location, RequestStatus
from storage import GridFSStorage
from users import get_user_by_token, is_provider, register_push_token, remove_push_token, update_user_profile

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------
# Models (requests/responses)
# ---------------------------
class RequestCreate(BaseModel):
    title: str = ""
    description: str = ""
    service_type: Optional[str] = None
    priority: Optional[str] = Field(None, pattern="^(" + "|".join(PRIORITIES) + ")$")
    status: Optional[str] = Field(None, pattern="^(draft|pending)$")
    location: Optional[Location] = None
    budget: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
    contact: Optional[Contact] = None
    files: List[str] = []


class RequestUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    service_type: Optional[str] = None
    priority: Optional[str] = Field(None, pattern="^(" + "|".join(PRIORITIES) + ")$")
    status: Optional[str] = Field(None, pattern="^(" + "|".join(RequestStatus.ALL) + ")$")
    location: Optional[Location] = None
    budget: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
    contact: Optional[Contact] = None
    files: Optional[List[str]] = None


class RatingCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: str = ""


class QuoteCreate(BaseModel):
    amount: float = Field(..., ge=0)
    currency: Optional[str] = None
    duration: str = ""
    note: str = ""
    package: str = Field("standard", pattern="^(basic|standard|premium)$")
    delivery_speed: str = Field("2_days", pattern="^(24_hours|2_days|3_5_days|1_week)$")
    revisions: int = Field(1, ge=0, le=5)
    include_materials: bool = False
    attachments: List[str] = []


class QuoteReject(BaseModel):
    reason: Optional[str] = None


class ProgressUpdate(BaseModel):
    progress: float
    updates: Dict[str, Any] = {}


class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1)


class InvoiceOverrides(BaseModel):
    amount: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
    note: Optional[str] = None


class PaymentCallback(BaseModel):
    id: str
    amount: Optional[float] = None
    status: str
    simulated: bool = False


class PaymentIntentCreate(BaseModel):
    quote_id: str
    payment_method_id: str


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    company_name: Optional[str] = None
    phone_number: Optional[str] = None
    service_type: Optional[str] = None
    services: Optional[List[str]] = None
    service_area: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class PushTokenCreate(BaseModel):
    token: str = Field(..., min_length=1)


class ConversationCreate(BaseModel):
    other_user_id: str


class MessageCreate(BaseModel):
    text: str = Field(..., min_length=1)
    request_id: Optional[str] = None
    attachments: List[Dict[str, Any]] = []


# ---------------------------
# Dependencies
# ---------------------------

def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_storage(request: Request):
    return request.app.state.storage


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_current_user(authorization: Optional[str] = Header(None),
                     store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    if not authorization:
        raise AuthRequired("Missing Authorization header")
    if not authorization.lower().startswith("bearer "):
        raise AuthRequired("Invalid auth scheme")
    token = authorization.split(" ", 1)[1].strip()
    user = get_user_by_token(store, token)
    if not user:
        raise AuthRequired("Invalid or expired token")
    return user


def require_provider(current=Depends(get_current_user)) -> Dict[str, Any]:
    if not is_provider(current):
        raise PermissionDenied("Provider account required")
    return current


def _check_participant(doc: Dict[str, Any], user_id: str, *fields: str) -> None:
    if user_id not in {doc.get(f) for f in fields}:
        raise PermissionDenied("Not a participant")


def _check_can_view_request(request: Dict[str, Any], user: Dict[str, Any]) -> None:
    """Owners and the assigned provider always see a request; other providers only while it is open to quotes."""
    user_id = user["id"]
    if user_id in {request.get("created_by"), request.get("order_giver_id")}:
        return
    if is_provider(user) and is_assigned_to(request, user_id):
        return
    if (is_provider(user) and request.get("status") == RequestStatus.PENDING
            and filter_open_requests_for_provider([request], user_id)):
        return
    raise PermissionDenied("You cannot view this request")


# ---------------------------
# Health & Utility
# ---------------------------
@router.get("/")
def read_root():
    return {"message": "Service Marketplace API running"}


@router.get("/test")
def test_database(request: Request):
    store: DocumentStore = request.app.state.store
    settings: Settings = request.app.state.settings
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "payment_mode": settings.payment_mode,
    }
    try:
        response["database_name"] = store.db.name
        collections = store.db.list_collection_names()
        response["collections"] = collections[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


# ---------------------------
# Profile
# ---------------------------
@router.get("/me")
def me(current=Depends(get_current_user)):
    return {k: v for k, v in current.items() if k != "tokens"}


@router.patch("/me")
def update_me(payload: ProfileUpdate, current=Depends(get_current_user), store=Depends(get_store)):
    user = update_user_profile(store, current["id"], payload.model_dump(exclude_unset=True))
    return {k: v for k, v in user.items() if k != "tokens"}


@router.post("/me/push-tokens")
def add_push_token(payload: PushTokenCreate, current=Depends(get_current_user), store=Depends(get_store)):
    user = register_push_token(store, current["id"], payload.token)
    return {"fcm_tokens": user.get("fcm_tokens", [])}


@router.delete("/me/push-tokens/{token}")
def delete_push_token(token: str, current=Depends(get_current_user), store=Depends(get_store)):
    user = remove_push_token(store, current["id"], token)
    return {"fcm_tokens": user.get("fcm_tokens", [])}


# ---------------------------
# Requests
# ---------------------------
@router.post("/requests")
def create_request_endpoint(data: RequestCreate, current=Depends(get_current_user), store=Depends(get_store)):
    return OrderGiverContext(store, current["id"]).create_request(data.model_dump(exclude_none=True))


@router.get("/requests")
def list_my_requests(status: Optional[str] = None, current=Depends(get_current_user), store=Depends(get_store)):
    return get_user_requests(store, current["id"], status)


@router.get("/requests/open")
def list_open_requests(service_type: Optional[str] = None, area: Optional[str] = None,
                       current=Depends(require_provider), store=Depends(get_store)):
    candidates = store.get_documents(
        REQUESTS,
        {"status": {"$in": [RequestStatus.PENDING, RequestStatus.IN_PROGRESS]}},
        sort=[("created_at", -1)],
    )
    return filter_open_requests_for_provider(candidates, current["id"], service_type, area)


@router.get("/requests/{request_id}")
def get_request(request_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    request = get_request_by_id(store, request_id)
    _check_can_view_request(request, current)
    return request


@router.patch("/requests/{request_id}")
def patch_request(request_id: str, payload: RequestUpdate, current=Depends(get_current_user),
                  store=Depends(get_store)):
    request = get_request_by_id(store, request_id)
    _check_participant(request, current["id"], "created_by", "order_giver_id")
    return update_request(store, request_id, payload.model_dump(exclude_unset=True, exclude_none=True))


@router.post("/requests/{request_id}/cancel")
def cancel_request_endpoint(request_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    return OrderGiverContext(store, current["id"]).cancel_request(request_id)


@router.post("/requests/{request_id}/complete")
def complete_request_endpoint(request_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    request = get_request_by_id(store, request_id)
    _check_participant(request, current["id"], "created_by", "order_giver_id")
    return complete_request(store, request_id)


@router.post("/requests/{request_id}/rating")
def rate_request_endpoint(request_id: str, payload: RatingCreate, current=Depends(get_current_user),
                          store=Depends(get_store)):
    return OrderGiverContext(store, current["id"]).rate_provider(request_id, payload.rating, payload.review)


@router.get("/requests/{request_id}/invoices")
def list_request_invoices(request_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    request = get_request_by_id(store, request_id)
    _check_participant(request, current["id"], "created_by", "order_giver_id", "provider_id")
    return get_invoices_for_request(store, request_id)


@router.get("/requests/{request_id}/quotes")
def list_request_quotes(request_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    request = get_request_by_id(store, request_id)
    quotes = get_quotes_for_request(store, request_id)
    if current["id"] in (request.get("created_by"), request.get("order_giver_id")):
        return quotes
    return [q for q in quotes if q.get("provider_id") == current["id"]]


@router.post("/requests/{request_id}/quotes")
def create_quote(request_id: str, data: QuoteCreate, current=Depends(require_provider), store=Depends(get_store)):
    return ProviderContext(store, current["id"]).send_quote(request_id, data.model_dump(exclude_none=True))


# ---------------------------
# Matching
# ---------------------------
@router.get("/matching/providers")
def matching_providers(service_type: str, area: Optional[str] = None, current=Depends(get_current_user),
                       store=Depends(get_store)):
    providers = get_matching_providers(store, service_type, area)
    public = ("id", "display_name", "company_name", "role", "service_type", "services", "service_area", "city",
              "average_rating")
    return [{k: p.get(k) for k in public} for p in providers]


# ---------------------------
# Quotes
# ---------------------------
@router.get("/quotes")
def list_quotes(role: str = Query("client", pattern="^(client|provider)$"), status: Optional[str] = None,
                current=Depends(get_current_user), store=Depends(get_store)):
    if role == "provider":
        return get_quotes_for_provider(store, current["id"], status)
    return get_quotes_for_user(store, current["id"], status)


@router.get("/quotes/{quote_id}")
def get_quote(quote_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    quote = get_quote_by_id(store, quote_id)
    _check_participant(quote, current["id"], "provider_id", "client_id")
    return quote


@router.post("/quotes/{quote_id}/accept")
def accept_quote_endpoint(quote_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    return OrderGiverContext(store, current["id"]).accept_quote(quote_id)


@router.post("/quotes/{quote_id}/reject")
def reject_quote_endpoint(quote_id: str, payload: Optional[QuoteReject] = None, current=Depends(get_current_user),
                          store=Depends(get_store)):
    return reject_quote(store, quote_id, actor_id=current["id"], reason=payload.reason if payload else None)


@router.post("/quotes/{quote_id}/withdraw")
def withdraw_quote_endpoint(quote_id: str, current=Depends(require_provider), store=Depends(get_store)):
    return ProviderContext(store, current["id"]).withdraw_quote(quote_id)


@router.post("/quotes/{quote_id}/invoice")
def invoice_for_quote(quote_id: str, current=Depends(get_current_user), store=Depends(get_store),
                      storage=Depends(get_storage)):
    quote = get_quote_by_id(store, quote_id)
    _check_participant(quote, current["id"], "provider_id", "client_id")
    return create_invoice_for_accepted_quote(store, quote_id, storage=storage)


@router.post("/quotes/{quote_id}/pay")
def pay_quote(quote_id: str, payment: PaymentCallback, current=Depends(get_current_user), store=Depends(get_store),
              storage=Depends(get_storage)):
    return OrderGiverContext(store, current["id"], storage).pay_quote(quote_id, payment.model_dump())


# ---------------------------
# Projects
# ---------------------------
@router.get("/projects")
def list_projects(role: str = Query("client", pattern="^(client|provider)$"), status: Optional[str] = None,
                  current=Depends(get_current_user), store=Depends(get_store)):
    if role == "provider":
        return get_projects_for_provider(store, current["id"], status)
    return get_projects_for_order_giver(store, current["id"], status)


@router.get("/projects/{project_id}")
def get_project(project_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    project = get_project_by_id(store, project_id)
    _check_participant(project, current["id"], "provider_id", "client_id", "order_giver_id")
    return project


@router.patch("/projects/{project_id}/progress")
def update_progress(project_id: str, payload: ProgressUpdate, current=Depends(require_provider),
                    store=Depends(get_store)):
    return ProviderContext(store, current["id"]).update_progress(project_id, payload.progress, payload.updates)


@router.post("/projects/{project_id}/comments")
def add_comment(project_id: str, payload: CommentCreate, current=Depends(get_current_user),
                store=Depends(get_store)):
    return add_project_comment(store, project_id, payload.text, author_id=current["id"])


@router.post("/projects/{project_id}/photos")
def upload_photo(project_id: str, file: UploadFile = File(...), current=Depends(require_provider),
                 store=Depends(get_store), storage=Depends(get_storage)):
    data = file.file.read()
    return ProviderContext(store, current["id"], storage).upload_photo(
        project_id, file.filename or "photo", data, file.content_type or "application/octet-stream"
    )


@router.get("/projects/{project_id}/invoices")
def list_project_invoices(project_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    project = get_project_by_id(store, project_id)
    _check_participant(project, current["id"], "provider_id", "client_id", "order_giver_id")
    return get_invoices_for_project(store, project_id)


@router.post("/projects/{project_id}/invoices")
def create_invoice(project_id: str, payload: Optional[InvoiceOverrides] = None, current=Depends(require_provider),
                   store=Depends(get_store), storage=Depends(get_storage)):
    overrides = payload.model_dump(exclude_none=True) if payload else {}
    return ProviderContext(store, current["id"], storage).create_invoice(project_id, overrides)


# ---------------------------
# Invoices
# ---------------------------
@router.get("/invoices")
def list_invoices(role: str = Query("client", pattern="^(client|provider)$"), current=Depends(get_current_user),
                  store=Depends(get_store)):
    if role == "provider":
        return get_invoices_for_provider(store, current["id"])
    return get_invoices_for_order_giver(store, current["id"])


@router.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    invoice = get_invoice_by_id(store, invoice_id)
    _check_participant(invoice, current["id"], "provider_id", "order_giver_id")
    return invoice


@router.post("/invoices/{invoice_id}/pay")
def pay_invoice(invoice_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    return OrderGiverContext(store, current["id"]).pay_invoice(invoice_id)


# ---------------------------
# Payments
# ---------------------------
@router.post("/payments/intent")
def create_payment_intent(payload: PaymentIntentCreate, idempotency_key: Optional[str] = Header(None),
                          current=Depends(get_current_user), store=Depends(get_store),
                          gateway=Depends(get_gateway)):
    quote = get_quote_by_id(store, payload.quote_id)
    if quote.get("client_id") != current["id"]:
        raise PermissionDenied("You can only pay for quotes on your own requests")
    return gateway.create_payment_intent(
        quote.get("amount"),
        payload.payment_method_id,
        metadata={"quote_id": quote["id"], "request_id": quote["request_id"],
                  "provider_name": quote.get("provider_name") or ""},
        idempotency_key=idempotency_key,
    )


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    gateway: PaymentGateway = request.app.state.gateway
    try:
        event = gateway.construct_webhook_event(payload, sig_header)
    except PaymentFailure as exc:
        raise HTTPException(status_code=400, detail=exc.message)

    if event["type"] == "payment_intent.succeeded":
        intent = event["data"]["object"]
        quote_id = (intent.get("metadata") or {}).get("quote_id")
        if quote_id:
            await run_in_threadpool(handle_payment_success, request.app.state.store, quote_id, {
                "id": intent["id"],
                "amount": intent["amount"] / 100,
                "status": "succeeded",
                "simulated": False,
            }, storage=request.app.state.storage)
        else:
            logger.warning("Payment intent %s has no quote_id metadata", intent["id"])
    return {"received": True}


# ---------------------------
# Notifications
# ---------------------------
@router.get("/notifications")
def list_notifications(limit: int = 20, current=Depends(get_current_user), store=Depends(get_store)):
    return get_user_notifications(store, current["id"], min(limit, 100))


@router.post("/notifications/{notification_id}/read")
def read_notification(notification_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    notification = mark_notification_as_read(store, notification_id, current["id"])
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.post("/notifications/read-all")
def read_all_notifications(current=Depends(get_current_user), store=Depends(get_store)):
    return {"updated": mark_all_notifications_as_read(store, current["id"])}


# ---------------------------
# Messaging
# ---------------------------
@router.post("/conversations")
def open_conversation(payload: ConversationCreate, current=Depends(get_current_user), store=Depends(get_store)):
    return get_or_create_conversation(store, current["id"], payload.other_user_id)


@router.get("/conversations")
def list_conversations(current=Depends(get_current_user), store=Depends(get_store)):
    return get_user_conversations(store, current["id"])


@router.get("/conversations/unread")
def unread_messages(current=Depends(get_current_user), store=Depends(get_store)):
    return {"unread": unread_total(get_user_conversations(store, current["id"]), current["id"])}


@router.get("/conversations/{conversation_id}/messages")
def list_messages(conversation_id: str, limit: int = 50, current=Depends(get_current_user),
                  store=Depends(get_store)):
    get_conversation(store, conversation_id, current["id"])
    return get_messages(store, conversation_id, min(limit, 200))


@router.post("/conversations/{conversation_id}/messages")
def post_message(conversation_id: str, payload: MessageCreate, current=Depends(get_current_user),
                 store=Depends(get_store)):
    return send_message(store, conversation_id, current["id"], payload.text, payload.request_id,
                        payload.attachments)


@router.post("/conversations/{conversation_id}/read")
def read_conversation(conversation_id: str, current=Depends(get_current_user), store=Depends(get_store)):
    return mark_messages_as_read(store, conversation_id, current["id"])


# ---------------------------
# Files
# ---------------------------
@router.get("/files/{file_id}")
def download_file(file_id: str, storage=Depends(get_storage)):
    if storage is None:
        raise HTTPException(status_code=404, detail="File storage not configured")
    content, content_type, filename = storage.open(file_id)
    headers = {"Content-Disposition": f'inline; filename="{os.path.basename(filename or file_id)}"'}
    return Response(content=content, media_type=content_type or "application/octet-stream", headers=headers)


# Optional: expose schemas for tooling
@router.get("/schema")
def get_schema_models():
    from schemas import Invoice, Notification, Project, Quote, ServiceRequest, User
    models = [
        ("User", "users", User),
        ("Request", "requests", ServiceRequest),
        ("Quote", "quotes", Quote),
        ("Project", "projects", Project),
        ("Invoice", "invoices", Invoice),
        ("Notification", "notifications", Notification),
    ]
    return {
        "models": [
            {"name": name, "collection": collection, "fields": list(model.model_fields.keys())}
            for name, collection, model in models
        ]
    }


# ---------------------------
# Application factory
# ---------------------------

def create_app(store: Optional[DocumentStore] = None, storage=None, settings: Optional[Settings] = None,
               gateway: Optional[PaymentGateway] = None, push_sender=None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    owns_store = store is None
    store = store or DocumentStore.from_settings(settings)
    if storage is None and owns_store:
        storage = GridFSStorage(store.db, settings.public_base_url)
    if push_sender is None and settings.fcm_server_key:
        push_sender = FCMPushSender(settings.fcm_server_key)
    push_forwarder = register_push_forwarding(store, push_sender) if push_sender is not None else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            store.ensure_indexes()
        except Exception as e:
            logger.warning("Could not create indexes: %s", str(e)[:100])
        yield
        if push_forwarder is not None:
            push_forwarder.shutdown()
        if owns_store:
            store.close()

    app = FastAPI(title="Service Marketplace API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.storage = storage
    app.state.gateway = gateway or PaymentGateway.from_settings(settings)
    app.state.push_forwarder = push_forwarder

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=port)
