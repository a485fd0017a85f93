"""
Database Schemas

School sales backend schemas using Pydantic models.
Documents are stored with camelCase keys; the models expose snake_case
attributes with camelCase aliases, so ``model_dump(by_alias=True)`` gives the
stored shape and incoming JSON/form payloads validate as-is.
"""
import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional

from bson import ObjectId
from fastapi.exceptions import RequestValidationError
from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


# -----------------------------
# Helpers
# -----------------------------

def normalize_zone(zone: Optional[str]) -> str:
    if not zone:
        return ""
    return re.sub(r"\s+", "", zone).upper()


def _check_object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("must be a valid id")
    return value


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


ObjectIdStr = Annotated[str, AfterValidator(_check_object_id)]
UtcDateTime = Annotated[datetime, AfterValidator(_naive_utc)]

OrderStatus = Literal["Pending", "Partial", "Completed", "Cancelled"]
PaymentStatus = Literal["Pending", "Partial", "Paid"]
VisitStatus = Literal["pending", "rescheduled", "completed"]
AttendanceStatus = Literal["present", "absent", "holiday"]


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


def parse_payload(model, data: dict):
    """Validate ``data`` against ``model``, reporting failures like body validation."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise RequestValidationError(e.errors())


def load_json_field(raw, name: str):
    # multipart forms carry nested lists as JSON strings
    if raw is None or not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        raise RequestValidationError([{"loc": (name,), "msg": "must be valid JSON", "type": "json_invalid"}])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)


class CurrentUser(BaseModel):
    """Claims carried by the bearer token"""
    user_id: str
    username: str
    role: str = Role.USER.value
    assigned_zone: str = ""


# -----------------------------
# Schools & zones
# -----------------------------

class SchoolCreate(CamelModel):
    """
    Schools visited by field agents
    Collection: "schools"
    """
    school_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    contact_person_name: str = Field(..., min_length=1)
    contact_number: str = Field(..., min_length=1)
    education_limit: str = Field(..., min_length=1)
    schedule_visit_date: UtcDateTime
    remark: Optional[str] = None
    zone: str = Field(..., min_length=1, description="Stored upper-cased without whitespace")

    @field_validator("zone")
    @classmethod
    def _normalize_zone(cls, v):
        return normalize_zone(v)


class SchoolUpdate(CamelModel):
    school_name: Optional[str] = None
    address: Optional[str] = None
    contact_person_name: Optional[str] = None
    contact_number: Optional[str] = None
    education_limit: Optional[str] = None
    schedule_visit_date: Optional[UtcDateTime] = None
    remark: Optional[str] = None
    zone: Optional[str] = None

    @field_validator("zone")
    @classmethod
    def _normalize_zone(cls, v):
        return normalize_zone(v) if v is not None else v


class ZoneCreate(CamelModel):
    """
    Sales territories
    Collection: "zones"
    """
    name: str = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, v):
        return normalize_zone(v)


class ZoneUpdate(ZoneCreate):
    pass


# -----------------------------
# Catalog
# -----------------------------

class CategoryCreate(CamelModel):
    """
    Book categories
    Collection: "categories"
    """
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None


class CategoryUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None


class BookCreate(CamelModel):
    """
    Books sold to schools
    Collection: "books"
    """
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    grade: str = Field(..., alias="class", description="Class/standard the book is for")
    pages: Optional[int] = Field(None, ge=0)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0, description="Units in stock")
    author: Optional[str] = None
    isbn: Optional[str] = Field(None, alias="ISBN")
    category: ObjectIdStr
    cover_image: Optional[str] = None
    pdf: Optional[str] = None
    video: Optional[str] = None


class BookUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    grade: Optional[str] = Field(None, alias="class")
    pages: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    author: Optional[str] = None
    isbn: Optional[str] = Field(None, alias="ISBN")
    category: Optional[ObjectIdStr] = None
    cover_image: Optional[str] = None
    pdf: Optional[str] = None
    video: Optional[str] = None


# -----------------------------
# Users
# -----------------------------

class UserCreate(CamelModel):
    """
    Field agents and admins
    Collection: "users"
    """
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = Role.USER
    phone_number: Optional[str] = None
    assigned_zone: Optional[str] = None

    @field_validator("assigned_zone")
    @classmethod
    def _normalize_zone(cls, v):
        return normalize_zone(v) if v is not None else v


class UserUpdate(CamelModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)
    role: Optional[Role] = None
    phone_number: Optional[str] = None
    assigned_zone: Optional[str] = None
    status: Optional[Literal["active", "deactive"]] = None

    @field_validator("assigned_zone")
    @classmethod
    def _normalize_zone(cls, v):
        return normalize_zone(v) if v is not None else v


class LoginRequest(BaseModel):
    username: str
    password: str


class FcmTokenUpdate(CamelModel):
    fcm_token: str = Field(..., min_length=1)


# -----------------------------
# Orders
# -----------------------------

class OrderBookItem(CamelModel):
    """Book line inside a category group (embedded in Order)"""
    book_id: ObjectIdStr
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price snapshot")


class OrderCategoryItem(CamelModel):
    category_id: ObjectIdStr
    books: List[OrderBookItem]


class OrderCreate(CamelModel):
    """
    Orders placed by an agent for a school
    Collection: "orders"
    """
    user_id: ObjectIdStr
    school_id: ObjectIdStr
    order_type: str = Field(..., min_length=1)
    discount: float = Field(0, ge=0)
    payment_terms: Optional[str] = None
    total_payment: float = Field(..., ge=0, description="Agreed amount, not recomputed from lines")
    image: Optional[str] = None
    order_items: List[OrderCategoryItem] = Field(..., min_length=1)


class OrderUpdate(CamelModel):
    school_id: Optional[ObjectIdStr] = None
    order_type: Optional[str] = None
    discount: Optional[float] = Field(None, ge=0)
    payment_terms: Optional[str] = None
    total_payment: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    status: Optional[OrderStatus] = None
    order_items: Optional[List[OrderCategoryItem]] = None


class ProcessPayment(CamelModel):
    order_id: ObjectIdStr
    received_amount: float = Field(..., gt=0)
    remaining_amount: Optional[float] = Field(None, ge=0)
    remarks: Optional[str] = None


# -----------------------------
# Visits
# -----------------------------

class VisitDetail(CamelModel):
    """Dated entry in a visit log (embedded in Visit)"""
    date: UtcDateTime
    particulars: str = Field(..., min_length=1)
    remarks: Optional[str] = None
    next_visit_date: Optional[UtcDateTime] = None
    location: str = Field(..., min_length=1)
    photo: Optional[str] = None


class VisitCreate(CamelModel):
    """
    Visit campaign of one agent to one school
    Collection: "visits"
    """
    user_id: Optional[ObjectIdStr] = None
    school_id: ObjectIdStr
    schedule_date: UtcDateTime
    status: Optional[VisitStatus] = None
    visit_details: List[VisitDetail] = Field(default_factory=list)


class VisitUpdate(CamelModel):
    schedule_date: Optional[UtcDateTime] = None
    status: Optional[VisitStatus] = None
    visit_details: Optional[List[VisitDetail]] = None


# -----------------------------
# Attendance
# -----------------------------

class AttendanceMark(CamelModel):
    """
    Daily check-in of an agent
    Collection: "attendances" (one per user and day)
    """
    status: AttendanceStatus = "present"
    remarks: Optional[str] = Field(None, max_length=500)
