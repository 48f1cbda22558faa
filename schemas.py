"""
Database and request schemas for the bookstore.

Each stored entity maps to a MongoDB collection named after the lowercase of
the class name (Book -> "book", CartItem -> "cartitem"). Request models
reject unknown fields so that every accepted key is declared here.
"""
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, ValidationInfo, field_validator

Gender = Literal["female", "male", "other"]
Provider = Literal["local", "google", "firebase"]
LiteraryGenre = Literal[
    "fantasy",
    "horror",
    "mystery",
    "romance",
    "science fiction",
    "dystopian",
    "biography",
    "drama",
    "fable",
    "poetry",
    "historical",
]
OrderStatus = Literal["ordered", "in preparation", "shipped", "received"]

PHONE_PATTERN = r"^[0-9]{10}$"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC, the form pymongo stores and returns."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Stored users: one variant per identity provider

class UserBase(BaseModel):
    email: EmailStr
    gender: Optional[Gender] = None
    address: Optional[str] = None
    is_admin: bool = False
    is_active: bool = True


class LocalUser(UserBase):
    """Users collection, password accounts. Collection name: "user"."""
    provider: Literal["local"] = "local"
    first_name: str
    last_name: str
    birth_date: datetime
    phone_number: str
    hashed_password: str


class GoogleUser(UserBase):
    provider: Literal["google"] = "google"
    provider_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class FirebaseUser(UserBase):
    provider: Literal["firebase"] = "firebase"
    provider_id: str


User = Annotated[Union[LocalUser, GoogleUser, FirebaseUser], Field(discriminator="provider")]
user_adapter = TypeAdapter(User)


def user_document(**fields) -> dict:
    """Validate `fields` against the variant named by `provider` and dump it for insertion."""
    fields.setdefault("provider", "local")
    return user_adapter.validate_python(fields).model_dump(exclude_none=True)


# Requests

class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LoginRequest(RequestModel):
    email: EmailStr
    password: str


class RefreshRequest(RequestModel):
    refresh_token: str


class UserCreate(RequestModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=1)
    birth_date: datetime
    gender: Optional[Gender] = None
    address: Optional[str] = None
    phone_number: str = Field(..., pattern=PHONE_PATTERN)

    @field_validator("birth_date")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v)


class UserUpdate(RequestModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class BookCreate(RequestModel):
    title: str
    author: str
    literary_genre: LiteraryGenre
    publication_date: datetime
    publisher: str
    price: float = Field(..., ge=0)
    isbn: str
    summary: str

    @field_validator("publication_date")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v)


class BookUpdate(RequestModel):
    title: Optional[str] = None
    author: Optional[str] = None
    literary_genre: Optional[LiteraryGenre] = None
    publication_date: Optional[datetime] = None
    publisher: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    isbn: Optional[str] = None
    summary: Optional[str] = None

    @field_validator("publication_date")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v)


class CartItemCreate(RequestModel):
    book_id: str
    quantity: int = Field(..., ge=1)


class CartItemUpdate(RequestModel):
    quantity: int = Field(..., ge=1)


class OrderCreate(RequestModel):
    coupon_id: Optional[str] = None
    total_amount: float = Field(..., ge=0)


class OrderStatusUpdate(RequestModel):
    status: OrderStatus


class CouponCreate(RequestModel):
    code: str = Field(..., min_length=1)
    discount_rate: float = Field(..., gt=0, le=100)
    start_at: datetime
    end_at: datetime
    is_valid: bool

    @field_validator("code")
    @classmethod
    def uppercase_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("start_at")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v)

    @field_validator("end_at")
    @classmethod
    def end_after_start(cls, v, info: ValidationInfo):
        v = as_utc(v)
        start = info.data.get("start_at")
        if start is not None and v <= start:
            raise ValueError("end_at must be after start_at")
        return v


class CouponUpdate(RequestModel):
    code: Optional[str] = Field(None, min_length=1)
    discount_rate: Optional[float] = Field(None, gt=0, le=100)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    is_valid: Optional[bool] = None

    @field_validator("code")
    @classmethod
    def uppercase_code(cls, v):
        return v.strip().upper() if v is not None else v

    @field_validator("start_at")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v)

    @field_validator("end_at")
    @classmethod
    def end_after_start(cls, v, info: ValidationInfo):
        v = as_utc(v)
        start = info.data.get("start_at")
        if v is not None and start is not None and v <= start:
            raise ValueError("end_at must be after start_at")
        return v


class ReviewCreate(RequestModel):
    rating: int = Field(..., ge=1, le=5)


class ReviewUpdate(RequestModel):
    rating: Optional[int] = Field(None, ge=1, le=5)


class CommentCreate(RequestModel):
    comment: str = Field(..., min_length=1)


class CommentUpdate(RequestModel):
    comment: str = Field(..., min_length=1)
