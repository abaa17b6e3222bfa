"""
Database Schemas for the Service Marketplace

Each Pydantic model describes the documents of one MongoDB collection. Services
build documents through these models (`model_dump()`) so defaults and value
ranges live in one place. Collection names are plural (`Request` -> "requests").
"""
from typing import List, Optional, Dict, Any
from datetime import datetime

from pydantic import BaseModel, Field, EmailStr, ConfigDict


class RequestStatus:
    DRAFT = "draft"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"

    ALL = (DRAFT, PENDING, IN_PROGRESS, COMPLETED, CANCELLED, ARCHIVED)


class QuoteStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ProjectStatus:
    ACTIVE = "active"
    COMPLETED = "completed"


class InvoiceStatus:
    GENERATED = "generated"
    PAID = "paid"


PRIORITIES = ("urgence_depannage", "urgent_sur_devis", "travaux_importants")

SERVICE_TYPES = (
    "plomberie_chauffage",
    "electricite_domotique",
    "menuiserie_amenagement",
    "maconnerie_gros_oeuvre",
    "peinture_finitions",
    "sols_revetements",
    "chauffage_ventilation_climatisation",
    "serrurerie_securite",
    "toiture_couverture",
    "jardin_exterieur",
    "renovation_energetique_isolation",
    "services_complementaires_coordination",
)

PROVIDER_ROLES = ("service_provider", "provider", "company", "agency", "contractor")


class User(BaseModel):
    """
    Users of the platform, created by the external auth layer.
    Collection: "users"
    """
    role: str = Field("order_giver", description="order_giver | admin | one of PROVIDER_ROLES")
    display_name: str = ""
    company_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    service_type: Optional[str] = Field(None, description="Legacy single category field")
    services: List[str] = Field(default_factory=list, description="Categories offered")
    service_area: Optional[str] = None
    city: Optional[str] = None
    fcm_tokens: List[str] = Field(default_factory=list)
    ratings: List[Dict[str, Any]] = Field(default_factory=list)
    average_rating: Optional[float] = None

    model_config = ConfigDict(extra="allow")


class Coordinates(BaseModel):
    lat: float
    lng: float


class Location(BaseModel):
    address: str = ""
    coordinates: Optional[Coordinates] = None


class Contact(BaseModel):
    person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


class AcceptedQuote(BaseModel):
    """Snapshot copied onto the request when a quote is accepted."""
    provider_id: str
    provider_name: Optional[str] = None
    price: float
    quote_id: str
    accepted_at: datetime


class Rating(BaseModel):
    stars: int = Field(..., ge=1, le=5)
    review: str = ""
    rated_at: datetime


class ServiceRequest(BaseModel):
    """
    A job posted by an order giver.
    Collection: "requests"
    """
    title: str = ""
    description: str = ""
    service_type: Optional[str] = Field(None, description=" | ".join(SERVICE_TYPES))
    priority: Optional[str] = Field(None, description=" | ".join(PRIORITIES))
    status: str = Field(RequestStatus.PENDING, description=" | ".join(RequestStatus.ALL))
    location: Location = Field(default_factory=Location)
    budget: Optional[float] = None
    currency: str = "EUR"
    contact: Contact = Field(default_factory=Contact)
    files: List[str] = Field(default_factory=list)
    created_by: str
    created_by_name: Optional[str] = None
    order_giver_id: str
    provider_assigned: bool = False
    provider_id: Optional[str] = None
    accepted_quote_id: Optional[str] = None
    accepted_quote: Optional[AcceptedQuote] = None
    quotes: List[str] = Field(default_factory=list)
    responses: int = 0
    rating: Optional[Rating] = None

    model_config = ConfigDict(extra="allow")


class Quote(BaseModel):
    """
    A provider's priced offer against a request.
    Collection: "quotes"
    """
    request_id: str
    provider_id: str
    provider_name: Optional[str] = None
    client_id: Optional[str] = None
    amount: float = Field(0, ge=0)
    currency: str = "EUR"
    duration: str = ""
    note: str = ""
    package: str = Field("standard", pattern="^(basic|standard|premium)$")
    delivery_speed: str = Field("2_days", pattern="^(24_hours|2_days|3_5_days|1_week)$")
    revisions: int = Field(1, ge=0, le=5)
    include_materials: bool = False
    attachments: List[str] = Field(default_factory=list)
    status: str = Field(QuoteStatus.PENDING, description="pending | accepted | rejected | withdrawn")
    rejection_reason: Optional[str] = None


class ProjectPhoto(BaseModel):
    url: str
    name: str
    uploaded_at: datetime


class ProjectComment(BaseModel):
    text: str
    author_id: Optional[str] = None
    created_at: datetime


class Project(BaseModel):
    """
    The engagement created once a quote is accepted.
    Collection: "projects"
    """
    request_id: str
    quote_id: str
    provider_id: str
    client_id: Optional[str] = None
    order_giver_id: Optional[str] = None
    title: str = ""
    description: str = ""
    service_type: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    status: str = Field(ProjectStatus.ACTIVE, description="active | completed")
    progress: int = Field(0, ge=0, le=100)
    photos: List[ProjectPhoto] = Field(default_factory=list)
    comments: List[ProjectComment] = Field(default_factory=list)
    budget: float = 0
    currency: str = "EUR"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Invoice(BaseModel):
    """
    Billing document for a project.
    Collection: "invoices"
    """
    project_id: str
    request_id: Optional[str] = None
    quote_id: Optional[str] = None
    provider_id: Optional[str] = None
    order_giver_id: Optional[str] = None
    amount: float = Field(0, ge=0)
    currency: str = "EUR"
    note: str = ""
    status: str = Field(InvoiceStatus.GENERATED, description="generated | paid")
    date: datetime
    invoice_url: Optional[str] = None
    paid_at: Optional[datetime] = None


class Notification(BaseModel):
    """
    In-app notification rendered from a template.
    Collection: "notifications"
    """
    user_id: str
    type: str
    title: str
    body: str
    icon: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    click_action: str = "/"
    read: bool = False


class Conversation(BaseModel):
    """
    Two-party conversation; the id is both user ids sorted and joined by "_".
    Collection: "conversations"
    """
    participants: List[str]
    last_message: Optional[Dict[str, Any]] = None
    last_message_at: Optional[datetime] = None
    unread_count: Dict[str, int] = Field(default_factory=dict)


class Message(BaseModel):
    """Collection: "messages" """
    conversation_id: str
    sender_id: str
    text: str
    request_id: Optional[str] = None
    read_by: List[str] = Field(default_factory=list)
    attachments: List[Dict[str, Any]] = Field(default_factory=list)


class Payment(BaseModel):
    """
    One processed payment-success callback, keyed by the gateway's id.
    Collection: "payments"
    """
    payment_id: str
    quote_id: str
    amount: float = 0
    status: str
    simulated: bool = False
    state: str = Field("processing", description="processing | applied | failed")
    invoice_id: Optional[str] = None
    error: Optional[str] = None
    claimed_at: Optional[datetime] = None
