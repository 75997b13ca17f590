from datetime import datetime

from pydantic import BaseModel, Field, ConfigDict, HttpUrl


# --- products ---


class ProductOut(BaseModel):
    id: int
    name: str
    description: str
    category: str
    price: int
    stock: int
    published: bool
    image_url: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    category: str = Field(default="", max_length=100)
    price: int = Field(gt=0)
    stock: int = Field(default=0, ge=0)
    published: bool = False
    image_url: str | None = None


class ProductUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    category: str | None = Field(default=None, max_length=100)
    price: int | None = Field(default=None, gt=0)
    published: bool | None = None
    image_url: str | None = None


class StockAdjustIn(BaseModel):
    delta: int


class CategoriesOut(BaseModel):
    categories: list[str]


class CategoryCount(BaseModel):
    category: str
    count: int


class ProductStatsOut(BaseModel):
    total: int
    published: int
    by_category: list[CategoryCount]
    low_stock: int
    out_of_stock: int


# --- orders ---


class OrderItemIn(BaseModel):
    product_id: int = Field(ge=1)
    quantity: int


class OrderCreateIn(BaseModel):
    items: list[OrderItemIn]
    delivery_address: str | None = None


class OrderUpdateIn(BaseModel):
    delivery_address: str | None = None


class OrderStatusIn(BaseModel):
    status: str


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    product_name: str
    quantity: int
    price_at_purchase: int


class OrderOut(BaseModel):
    id: str
    user_id: str
    status: str
    total_amount: int
    delivery_address: str | None = None
    cancelled: bool
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemOut]


class StatusCount(BaseModel):
    status: str
    count: int


class OrderStatsOut(BaseModel):
    total: int
    by_status: list[StatusCount]
    total_revenue: int
    average_order_value: int
    recent_orders: int
    cancelled: int


# --- checkout ---


class CartItemIn(BaseModel):
    product_id: int = Field(ge=1)
    quantity: int
    price: int


class CheckoutCreateIn(BaseModel):
    items: list[CartItemIn]
    total: int = Field(ge=1)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    success_url: HttpUrl
    cancel_url: HttpUrl
    metadata: dict[str, str | int | bool] | None = None


class CheckoutCreateOut(BaseModel):
    session_id: str
    payment_url: str
    expires_at: datetime


class CartItemOut(BaseModel):
    product_id: int
    quantity: int
    price: int


class CheckoutSessionOut(BaseModel):
    id: str
    user_id: str
    status: str
    currency: str
    items: list[CartItemOut]
    total: int
    metadata: dict | None = None
    external_session_id: str | None = None
    order_id: str | None = None
    created_at: datetime
    expires_at: datetime


class CheckoutConfirmIn(BaseModel):
    delivery_address: str | None = None
