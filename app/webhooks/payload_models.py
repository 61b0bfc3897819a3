from pydantic import BaseModel, Field
from typing import Optional, List, Any


class ShopifyLineItem(BaseModel):
    id: Optional[int] = None
    sku: Optional[str] = Field(None, description="Merchant SKU")
    quantity: int = 0
    variant_id: Optional[int] = None
    title: Optional[str] = None
    class Config:
        extra = "allow"


class ShopifyOrder(BaseModel):
    id: int = Field(..., description="Shopify order ID")
    order_number: Optional[int] = None
    name: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancel_reason: Optional[str] = None
    financial_status: Optional[str] = None
    line_items: List[ShopifyLineItem] = Field(default_factory=list)
    class Config:
        extra = "allow"


class ShopifyVariant(BaseModel):
    id: int
    sku: Optional[str] = None
    price: Optional[str] = None
    compare_at_price: Optional[str] = None
    inventory_quantity: Optional[int] = None
    inventory_item_id: Optional[int] = None
    class Config:
        extra = "allow"


class ShopifyProduct(BaseModel):
    id: int
    title: Optional[str] = None
    variants: List[ShopifyVariant] = Field(default_factory=list)
    class Config:
        extra = "allow"


class ShopifyInventoryLevel(BaseModel):
    inventory_item_id: int
    location_id: Optional[int] = None
    available: Optional[int] = None
    updated_at: Optional[str] = None
    class Config:
        extra = "allow"


class NaverProductOrder(BaseModel):
    productOrderId: Optional[str] = None
    originProductNo: Optional[Any] = None
    sellerProductCode: Optional[str] = Field(None, description="Seller SKU")
    quantity: int = 0
    class Config:
        extra = "allow"


class NaverOrderEvent(BaseModel):
    orderId: Optional[str] = None
    productOrders: List[NaverProductOrder] = Field(default_factory=list)
    class Config:
        extra = "allow"
