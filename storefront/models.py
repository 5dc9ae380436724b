from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"


class UserDB(BaseModel):
    id: Optional[int] = Field(None, alias="_id")
    username: str
    password_hash: str
    is_admin: bool = False

    class Config:
        populate_by_name = True


class CategoryDB(BaseModel):
    id: Optional[int] = Field(None, alias="_id")
    name: str
    slug: str
    image: Optional[str] = None

    class Config:
        populate_by_name = True


class ProductDB(BaseModel):
    id: Optional[int] = Field(None, alias="_id")
    name: str
    slug: str
    description: str = ""
    price: int  # minor units
    sale_price: Optional[int] = None
    stock: int = 0
    category_id: Optional[int] = None
    image: Optional[str] = None
    images: List[str] = []
    badge: Optional[str] = None
    featured: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class OrderItemDB(BaseModel):
    product_id: int
    name: str
    price: int  # authoritative unit price at order time
    quantity: int
    image: Optional[str] = None
    line_total: int


class OrderDB(BaseModel):
    id: Optional[int] = Field(None, alias="_id")
    customer_name: str
    customer_email: str
    customer_phone: str
    address: str
    city: str
    state: str
    pin_code: str
    items: List[OrderItemDB]
    total_amount: int
    tax_amount: int = 0
    shipping_amount: int = 0
    grand_total: int
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CASH
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True
