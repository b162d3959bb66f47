"""
Database Schemas for the Store

Each Pydantic model represents a collection in MongoDB. The collection name is the
lowercase of the class name (e.g., Product -> "product").
"""

from datetime import datetime
from enum import Enum
from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SHIPPED = "shipped"
    CANCELLED = "cancelled"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Field(Role.USER, description="user or admin")
    is_active: bool = Field(True, description="Whether user is active")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Price in dollars")
    stock: int = Field(..., ge=0, description="Units available")
    category: str = Field(..., min_length=1, description="Product category")
    thumbnail: Optional[str] = Field(None, description="Image URL")
    is_active: bool = Field(True, description="False once soft-deleted")


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    """
    Shopping cart collection schema
    Collection name: "cart"
    One cart per owner, enforced by a unique index on owner_id.
    """
    owner_id: str
    line_items: List[CartItem] = Field(default_factory=list)
    version: int = Field(0, ge=0, description="Bumped on every write")


class OrderItem(BaseModel):
    product_id: str
    name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price_at_purchase: float = Field(..., ge=0)


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    Immutable once written except for status.
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    owner_id: str
    line_items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = Field(OrderStatus.PENDING, description="pending, completed, shipped, cancelled")
    purchase_date: datetime


# API payloads

class ProductCreate(Product):
    is_active: Literal[True] = True


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    thumbnail: Optional[str] = None


class ProductOut(Product):
    id: str


class CartOut(BaseModel):
    id: str
    owner_id: str
    line_items: List[CartItem]
    version: int


class AddToCartRequest(BaseModel):
    quantity: int = Field(1, gt=0)


class SetQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=0)


class OrderOut(Order):
    id: str


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    payload: List[T]
    total_docs: int
    page: int
    limit: int
    total_pages: int
    has_prev_page: bool
    has_next_page: bool
    prev_page: Optional[int] = None
    next_page: Optional[int] = None


class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AuthResponse(BaseModel):
    user_id: str
    name: str
    email: EmailStr
    role: Role
    token: str


class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: Role
    is_active: bool


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None


class AdminUserUpdate(ProfileUpdate):
    model_config = ConfigDict(use_enum_values=True)

    role: Optional[Role] = None
