"""Pydantic schemas for the logistics API."""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, Field

from pda_logistics.schemas.base import BaseResponseSchema, BaseCreateSchema
from pda_logistics.models.order import OrderKind, DeliveryMethod, PaymentStatus
from pda_logistics.models.confirmation import ConfirmationType, ConfirmationMethod


# ==================== Requests ====================

class CreateOrderRequest(BaseCreateSchema):
    """Schema for creating an order."""
    buyer_id: int
    seller_id: int
    total_amount: Decimal = Field(..., ge=0, decimal_places=2)
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    order_kind: OrderKind = OrderKind.STANDARD
    order_number: Optional[str] = Field(None, max_length=50)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    pickup_site_manager_id: Optional[int] = None
    psm_helped: bool = False
    referrer_id: Optional[int] = None
    seller_address: Optional[str] = None
    seller_latitude: Optional[Decimal] = Field(None, ge=-90, le=90)
    seller_longitude: Optional[Decimal] = Field(None, ge=-180, le=180)
    pickup_site_name: Optional[str] = Field(None, max_length=200)
    pickup_site_latitude: Optional[Decimal] = Field(None, ge=-90, le=90)
    pickup_site_longitude: Optional[Decimal] = Field(None, ge=-180, le=180)
    delivery_address: Optional[str] = None
    delivery_latitude: Optional[Decimal] = Field(None, ge=-90, le=90)
    delivery_longitude: Optional[Decimal] = Field(None, ge=-180, le=180)
    delivery_notes: Optional[str] = None
    kind_details: Optional[Dict[str, Any]] = None
    created_by: Optional[int] = None


class PaymentConfirmRequest(BaseCreateSchema):
    actor_id: Optional[int] = None
    reason: Optional[str] = None


class AcceptOrderRequest(BaseCreateSchema):
    """Agent claiming an order."""
    agent_id: int
    order_kind: Optional[OrderKind] = None


class TransitionRequest(BaseCreateSchema):
    """Schema for a status change. Legacy status strings are accepted."""
    status: str = Field(..., min_length=1)
    actor_id: Optional[int] = None
    reason: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    override_confirmation: bool = False


class OTPGenerateRequest(BaseCreateSchema):
    confirmation_type: ConfirmationType
    target_role: str = Field(..., max_length=30)
    target_user_id: Optional[int] = None


class OTPVerifyRequest(BaseCreateSchema):
    confirmation_type: ConfirmationType
    code: str = Field(..., min_length=4, max_length=10)
    verifier_id: int


class QRVerifyRequest(BaseCreateSchema):
    qr_data: Union[str, Dict[str, Any]]
    order_id: Optional[int] = None


class GPSValidateRequest(BaseCreateSchema):
    """Position check against an explicit expected point."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    expected_latitude: float = Field(..., ge=-90, le=90)
    expected_longitude: float = Field(..., ge=-180, le=180)
    user_id: Optional[int] = None
    tolerance_meters: Optional[int] = Field(None, gt=0)


class LocationPingRequest(BaseCreateSchema):
    user_id: int
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)


class ConfirmRequest(BaseCreateSchema):
    """Handover confirmation with its evidence."""
    confirmation_type: ConfirmationType
    method: ConfirmationMethod
    confirmer_role: str = Field(..., max_length=30)
    confirmer_id: int
    otp_code: Optional[str] = None
    qr_data: Optional[Union[str, Dict[str, Any]]] = None
    delivery_code: Optional[str] = None
    confirmation_data: Optional[Dict[str, Any]] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)


class RateUpdateRequest(BaseCreateSchema):
    """Schema for updating commission rates (percentages)."""
    admin_id: int
    rates: Dict[str, Decimal]


# ==================== Responses ====================

class OrderResponse(BaseResponseSchema):
    """Response schema for Order."""
    id: int
    order_number: str
    order_kind: str
    buyer_id: int
    seller_id: int
    agent_id: Optional[int] = None
    pickup_site_manager_id: Optional[int] = None
    referrer_id: Optional[int] = None
    psm_helped: bool = False
    status: str
    payment_status: str
    delivery_method: str
    total_amount: Decimal
    base_amount: Optional[Decimal] = None
    platform_margin: Optional[Decimal] = None
    agent_commission: Optional[Decimal] = None
    platform_commission: Optional[Decimal] = None
    home_delivery_fee: Optional[Decimal] = None
    commission_calculated: bool = False
    seller_address: Optional[str] = None
    pickup_site_name: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_notes: Optional[str] = None
    kind_details: Optional[Dict[str, Any]] = None
    seller_payout_released: bool = False
    agent_commission_released: bool = False
    dispute_grace_period_end: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderListResponse(BaseModel):
    items: List[OrderResponse]
    total: int


class StatusHistoryResponse(BaseResponseSchema):
    id: int
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[int] = None
    reason: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    metadata_json: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class ConfirmationResponse(BaseResponseSchema):
    id: int
    order_id: int
    confirmation_type: str
    confirmation_method: str
    confirmer_role: str
    confirmer_id: int
    confirmation_data: Optional[Dict[str, Any]] = None
    gps_latitude: Optional[Decimal] = None
    gps_longitude: Optional[Decimal] = None
    within_radius: Optional[bool] = None
    distance_meters: Optional[int] = None
    confirmed_at: Optional[datetime] = None


class GPSPointResponse(BaseResponseSchema):
    id: int
    user_id: Optional[int] = None
    check_type: str
    latitude: Decimal
    longitude: Decimal
    accuracy: Optional[Decimal] = None
    distance_meters: Optional[int] = None
    within_radius: Optional[bool] = None
    recorded_at: Optional[datetime] = None


class CommissionResponse(BaseResponseSchema):
    id: int
    order_id: int
    party_id: Optional[int] = None
    commission_type: str
    amount: Decimal
    percentage: Optional[Decimal] = None
    base_amount: Optional[Decimal] = None
    status: str
    approval_due_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class EarningResponse(BaseResponseSchema):
    id: int
    order_id: int
    commission_transaction_id: int
    amount: Decimal
    earnings_type: str
    status: str
    created_at: Optional[datetime] = None


class EarningsSummaryResponse(BaseModel):
    agent_id: int
    total_earned: Decimal
    pending: Decimal
    approved: Decimal
    paid: Decimal
    reversed: Decimal
    order_count: int
    earnings: List[EarningResponse] = []


class TrackingResponse(BaseModel):
    """Order with everything needed to follow it end to end."""
    order: OrderResponse
    status_history: List[StatusHistoryResponse]
    confirmations: List[ConfirmationResponse]
    gps_trail: List[GPSPointResponse]
    commissions: List[CommissionResponse]
    allowed_transitions: List[str]
    status_flow: List[str]


class AcceptOrderResponse(BaseModel):
    order: OrderResponse
    delivery_code: str
    agent_commission: Decimal
    platform_commission: Decimal


class TransitionResponse(BaseModel):
    order_id: int
    order_number: str
    from_status: str
    to_status: str
    action: str
    released: List[str] = []
    notifications_sent: int = 0


class OTPGenerateResponse(BaseModel):
    order_id: int
    confirmation_type: str
    code: str
    expires_in_minutes: int


class QRCodeResponse(BaseResponseSchema):
    order_id: int
    qr_type: str
    payload: Dict[str, Any]
    image_base64: str


class GPSValidationResponse(BaseModel):
    within_radius: bool
    distance_meters: int
    tolerance_meters: int


class ConfirmResponse(BaseModel):
    confirmation: ConfirmationResponse
    gps: Optional[GPSValidationResponse] = None
    transition: Optional[TransitionResponse] = None


class CommissionRatesResponse(BaseModel):
    rates: Dict[str, Decimal]
