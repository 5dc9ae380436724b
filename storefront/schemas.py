from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List, Dict
from datetime import datetime
from shared.security_config import sanitize_input, SLUG_PATTERN
from storefront.models import PaymentMethod
from storefront.pricing import effective_price

# --- Categories ---

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)
    image: Optional[str] = None

    @field_validator('name', 'image')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class CategoryResponse(BaseModel):
    id: int
    name: str
    slug: str
    image: Optional[str] = None

# --- Products ---

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)
    description: str = ""
    price: int = Field(..., gt=0)
    sale_price: Optional[int] = Field(None, gt=0)
    stock: int = Field(0, ge=0)
    category_id: Optional[int] = None
    image: Optional[str] = None
    images: List[str] = []
    badge: Optional[str] = None
    featured: bool = False
    is_active: bool = True

    @field_validator('name', 'description', 'image', 'badge')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    slug: Optional[str] = Field(None, pattern=SLUG_PATTERN)
    description: Optional[str] = None
    price: Optional[int] = Field(None, gt=0)
    sale_price: Optional[int] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[int] = None
    image: Optional[str] = None
    images: Optional[List[str]] = None
    badge: Optional[str] = None
    featured: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'description', 'image', 'badge')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class ProductResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: str
    price: int
    sale_price: Optional[int] = None
    effective_price: int
    stock: int
    in_stock: bool
    category_id: Optional[int] = None
    image: Optional[str] = None
    images: List[str] = []
    badge: Optional[str] = None
    featured: bool
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_db(cls, product) -> "ProductResponse":
        return cls(
            **product.model_dump(),
            effective_price=effective_price(product.price, product.sale_price),
            in_stock=product.stock > 0,
        )

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    total: int

# --- Orders ---

class OrderItemCreate(BaseModel):
    product_id: int = Field(..., gt=0, strict=True)
    quantity: int = Field(..., gt=0, strict=True)
    # Echo of the price the shopper saw; never used for totals
    price: Optional[int] = Field(None, ge=0)

class OrderCreate(BaseModel):
    customer_name: str = Field(..., min_length=3)
    customer_email: EmailStr
    customer_phone: str = Field(..., min_length=10)
    address: str = Field(..., min_length=5)
    city: str = Field(..., min_length=2)
    state: str = Field(..., min_length=2)
    pin_code: str = Field(..., min_length=6)
    payment_method: PaymentMethod = PaymentMethod.CASH
    items: List[OrderItemCreate] = Field(..., min_length=1)

    @field_validator('customer_name', 'customer_phone', 'address', 'city', 'state', 'pin_code')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class OrderStatusUpdate(BaseModel):
    status: str

    @field_validator('status')
    def sanitize_status(cls, v):
        return sanitize_input(v).lower()

class OrderItemResponse(BaseModel):
    product_id: int
    name: str
    price: int
    quantity: int
    image: Optional[str] = None
    line_total: int

class OrderResponse(BaseModel):
    id: int
    customer_name: str
    customer_email: str
    customer_phone: str
    address: str
    city: str
    state: str
    pin_code: str
    items: List[OrderItemResponse]
    total_amount: int
    tax_amount: int
    shipping_amount: int
    grand_total: int
    status: str
    payment_method: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_db(cls, order) -> "OrderResponse":
        return cls(**order.model_dump())

# --- Auth ---

class UserLogin(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

class Token(BaseModel):
    access_token: str
    token_type: str
    expires_in: int

# --- Admin ---

class DashboardResponse(BaseModel):
    total_products: int
    in_stock_products: int
    out_of_stock_products: int
    total_orders: int
    orders_by_status: Dict[str, int]
    revenue: int
    products_by_category: Dict[str, int]
