# marketplace/domain/schemas.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from marketplace.domain.errors import ValidationError
from marketplace.domain.statuses import (
    DiscountType,
    PaymentType,
    DeliveryStatus,
    OrderStatus,
)


# catalog collaborator

class VariantInfo(BaseModel):
    name: str
    value: str
    price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None
    inventory: int = 0
    sku: Optional[str] = None


class SizeVariantInfo(BaseModel):
    size: str
    price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None
    inventory: int = 0
    sku: Optional[str] = None


class LinePricing(BaseModel):
    price: Decimal
    selling_price: Decimal
    inventory: int
    sku: Optional[str] = None


class ProductInfo(BaseModel):
    """Read-only product view served by the catalog service."""

    id: int
    store_id: int
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    sku: Optional[str] = None
    price: Decimal
    selling_price: Decimal
    inventory: int = 0
    variants: List[VariantInfo] = []
    size_variants: List[SizeVariantInfo] = []

    def pricing_for(self, variant: str | None, size: str | None) -> LinePricing:
        """
        Price, selling price, stock and sku for a variant/size choice.
        Variant values override the product, size values override both.
        """
        pricing = LinePricing(
            price=self.price,
            selling_price=self.selling_price,
            inventory=self.inventory,
            sku=self.sku,
        )

        if variant:
            match = next((v for v in self.variants if v.value == variant), None)
            if match is None:
                raise ValidationError(f"Variant '{variant}' is not available for product {self.id}")
            pricing = _override(pricing, match)

        if size:
            match = next((s for s in self.size_variants if s.size == size), None)
            if match is None:
                raise ValidationError(f"Size '{size}' is not available for product {self.id}")
            pricing = _override(pricing, match)

        return pricing


def _override(pricing: LinePricing, option) -> LinePricing:
    return LinePricing(
        price=option.price if option.price is not None else pricing.price,
        selling_price=option.selling_price if option.selling_price is not None else pricing.selling_price,
        inventory=option.inventory,
        sku=option.sku or pricing.sku,
    )


# carts

class ItemIn(BaseModel):
    """Add a product to the active cart of a store, or replace its quantity."""

    store_id: int = Field(..., gt=0)
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    variant: Optional[str] = None
    size: Optional[str] = None


class ItemRefIn(BaseModel):
    product_id: int = Field(..., gt=0)
    variant: Optional[str] = None
    size: Optional[str] = None


class QuantityIn(ItemRefIn):
    quantity: int = Field(..., gt=0)


class ApplyCouponIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)


class ApplyOfferIn(BaseModel):
    offer_id: int = Field(..., gt=0)


class CartItemOut(BaseModel):
    product_id: int
    variant: Optional[str] = None
    size: Optional[str] = None
    quantity: int
    price: Decimal
    selling_price: Decimal
    discount_amt: Decimal
    discount_pct: Decimal
    offer_discount: Decimal
    offer_discount_pct: Decimal
    coupon_discount: Decimal
    coupon_discount_pct: Decimal
    effective_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class CartSummaryOut(BaseModel):
    total_without_discount: Decimal
    product_discount: Decimal
    offer_discount: Decimal
    coupon_discount: Decimal
    total_discount: Decimal
    subtotal: Decimal
    item_count: int


class CartOut(BaseModel):
    cart_id: int
    user_id: int
    store_id: int
    state: str
    version: int
    is_deleted: bool
    coupon_id: Optional[int] = None
    offer_id: Optional[int] = None
    items: List[CartItemOut]
    summary: CartSummaryOut


class ItemCountOut(BaseModel):
    count: int


class ProductInCartOut(BaseModel):
    in_cart: bool
    quantity: int
    cart_id: Optional[int] = None


# offers & coupons

class DiscountIn(BaseModel):
    discount_type: str
    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    discount_percentage: Decimal = Field(Decimal("0"), ge=0, le=100)
    max_discount: Decimal = Field(Decimal("0"), ge=0)
    is_active: bool = True
    products: List[int] = []

    @field_validator("discount_type")
    @classmethod
    def known_type(cls, value: str) -> str:
        if value not in DiscountType.ALL:
            raise ValueError(f"discount_type must be one of {', '.join(DiscountType.ALL)}")
        return value

    @model_validator(mode="after")
    def positive_discount(self):
        if self.discount_type == DiscountType.AMOUNT and self.discount_amount <= 0:
            raise ValueError("Discount amount must be greater than 0 for amount type")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_percentage <= 0:
            raise ValueError("Discount percentage must be greater than 0 for percentage type")
        return self


class OfferCreate(DiscountIn):
    pass


class CouponCreate(DiscountIn):
    code: str = Field(..., min_length=1, max_length=50)


class PromotionUpdate(BaseModel):
    """Partial update; omitted fields keep their value."""

    discount_type: Optional[str] = None
    discount_amount: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    max_discount: Optional[Decimal] = Field(None, ge=0)
    is_active: Optional[bool] = None
    products: Optional[List[int]] = None

    @field_validator("discount_type")
    @classmethod
    def known_type(cls, value):
        if value is not None and value not in DiscountType.ALL:
            raise ValueError(f"discount_type must be one of {', '.join(DiscountType.ALL)}")
        return value


class OfferUpdate(PromotionUpdate):
    pass


class CouponUpdate(PromotionUpdate):
    code: Optional[str] = Field(None, min_length=1, max_length=50)


class PromotionOut(BaseModel):
    id: int
    store_id: int
    discount_type: str
    discount_amount: Decimal
    discount_percentage: Decimal
    max_discount: Decimal
    is_active: bool
    products: List[int]
    created_at: datetime
    updated_at: datetime


class OfferOut(PromotionOut):
    pass


class CouponOut(PromotionOut):
    code: str


# checkout & orders

class CheckoutIn(BaseModel):
    cart_id: int = Field(..., gt=0)
    payment_type: str
    delivery_address_id: int = Field(..., gt=0)
    special_note_buyer: Optional[str] = Field(None, max_length=500)
    special_note_seller: Optional[str] = Field(None, max_length=500)

    @field_validator("payment_type")
    @classmethod
    def known_payment_type(cls, value: str) -> str:
        if value not in PaymentType.ALL:
            raise ValueError(f"payment_type must be one of {', '.join(PaymentType.ALL)}")
        return value


class OrderItemOut(BaseModel):
    index: int
    product_id: int
    variant: Optional[str] = None
    size: Optional[str] = None
    quantity: int
    price: Decimal
    discounted_price: Decimal
    total_price: Decimal
    status: str
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    returned_at: Optional[datetime] = None
    return_reason: Optional[str] = None


class PaymentIntentOut(BaseModel):
    payment_id: int
    gateway_order_id: str
    key_id: str
    amount: int = Field(..., description="Amount in minor units")
    currency: str
    status: str


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: int
    store_id: int
    cart_snapshot_id: int
    payment_type: str
    payment_status: str
    order_status: str
    total_without_discount: Decimal
    total_discount: Decimal
    offer_discount: Decimal
    coupon_discount: Decimal
    delivery_charges: Decimal
    total_payable_amount: Decimal
    coupon_id: Optional[int] = None
    offer_id: Optional[int] = None
    delivery_address_id: int
    delivery_tracking_id: Optional[int] = None
    special_note_buyer: Optional[str] = None
    special_note_seller: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    items: List[OrderItemOut]
    payment: Optional[PaymentIntentOut] = None


class OrderPageOut(BaseModel):
    items: List[OrderOut]
    total: int
    page: int
    limit: int


class StatusUpdateIn(BaseModel):
    status: str
    description: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=255)

    @field_validator("status")
    @classmethod
    def known_status(cls, value: str) -> str:
        if value not in OrderStatus.ALL:
            raise ValueError(f"status must be one of {', '.join(OrderStatus.ALL)}")
        return value


class CancelIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ItemsIn(BaseModel):
    item_indices: List[int] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)


class RefundOutcomeOut(BaseModel):
    status: str
    amount: Optional[Decimal] = None
    refund_id: Optional[str] = None
    error: Optional[str] = None


class CancellationOut(BaseModel):
    order: OrderOut
    refund: Optional[RefundOutcomeOut] = None


# tracking

class TrackingUpdateIn(BaseModel):
    status: str
    description: str = Field(..., min_length=1, max_length=500)
    location: Optional[str] = Field(None, max_length=255)
    tracking_number: Optional[str] = Field(None, max_length=100)
    courier_name: Optional[str] = Field(None, max_length=100)
    courier_website: Optional[str] = Field(None, max_length=255)
    estimated_delivery_date: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, value: str) -> str:
        if value not in DeliveryStatus.ALL:
            raise ValueError(f"status must be one of {', '.join(DeliveryStatus.ALL)}")
        return value


class TrackingEventOut(BaseModel):
    status: str
    description: str
    location: Optional[str] = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class TrackingOut(BaseModel):
    id: int
    order_id: int
    tracking_number: Optional[str] = None
    courier_name: Optional[str] = None
    courier_website: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    current_status: str
    status_updates: List[TrackingEventOut]

    model_config = ConfigDict(from_attributes=True)


# payments

class CreateIntentIn(BaseModel):
    order_id: int = Field(..., gt=0)


class VerifyPaymentIn(BaseModel):
    gateway_order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    gateway_signature: str = Field(..., min_length=1)


class RefundIn(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, description="Defaults to the remaining amount")
    reason: Optional[str] = Field(None, max_length=500)


class RefundOut(BaseModel):
    id: int
    gateway_refund_id: Optional[str] = None
    amount: Decimal
    status: str
    reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentOut(BaseModel):
    id: int
    user_id: int
    order_id: int
    amount: Decimal
    currency: str
    payment_method: str
    status: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    refunded_amount: Decimal
    refund_status: Optional[str] = None
    refunds: List[RefundOut] = []
    created_at: datetime
    updated_at: datetime


class WebhookAckOut(BaseModel):
    status: str


# gateway webhook bodies

class WebhookEnvelope(BaseModel):
    event: str
    payload: Dict[str, Any] = {}


def _unwrap_entity(value):
    # {"entity": {...}} from the gateway, the bare entity from older senders
    if isinstance(value, dict) and "entity" in value:
        return value["entity"]
    return value


class GatewayPaymentEntity(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    order_id: Optional[str] = None
    method: Optional[str] = None
    error_description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def unwrap(cls, value):
        return _unwrap_entity(value)


class GatewayRefundEntity(BaseModel):
    """refund.processed entity; amount is in minor units."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)

    @model_validator(mode="before")
    @classmethod
    def unwrap(cls, value):
        return _unwrap_entity(value)


# payouts

class PayoutGenerateIn(BaseModel):
    store_id: int = Field(..., gt=0)
    order_ids: List[int] = Field(..., min_length=1)
    platform_fee_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    notes: Optional[str] = Field(None, max_length=500)


class PayoutProcessIn(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=100)
    transaction_reference: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=500)


class PayoutItemOut(BaseModel):
    order_id: int
    amount: Decimal
    platform_fee: Decimal
    tax: Decimal
    net_amount: Decimal

    model_config = ConfigDict(from_attributes=True)


class ExcludedOrderOut(BaseModel):
    order_id: int
    reason: str


class PayoutOut(BaseModel):
    id: int
    store_id: int
    payout_batch: str
    status: str
    platform_fee_percentage: Decimal
    total_amount: Decimal
    total_platform_fee: Decimal
    total_tax: Decimal
    net_payout_amount: Decimal
    payout_date: Optional[datetime] = None
    transaction_id: Optional[str] = None
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    items: List[PayoutItemOut]
    excluded: List[ExcludedOrderOut] = []


class PayoutPageOut(BaseModel):
    items: List[PayoutOut]
    total: int
    page: int
    limit: int


class PayoutTotalsOut(BaseModel):
    count: int
    total_amount: Decimal
    total_platform_fee: Decimal
    total_tax: Decimal
    net_payout_amount: Decimal


class MonthlyPayoutOut(PayoutTotalsOut):
    month: str


class PayoutSummaryOut(BaseModel):
    store_id: int
    totals: PayoutTotalsOut
    by_status: dict[str, PayoutTotalsOut]
    monthly: List[MonthlyPayoutOut]

