"""API endpoints for order logistics: assignment, status, confirmations, commissions."""
from typing import Optional, List

from fastapi import APIRouter, Query

from pda_logistics.config import settings
from pda_logistics.models.order import OrderKind, DeliveryMethod
from pda_logistics.models.confirmation import QRCodeType
from pda_logistics.schemas.logistics import (
    CreateOrderRequest, PaymentConfirmRequest, AcceptOrderRequest, TransitionRequest,
    OTPGenerateRequest, OTPVerifyRequest, QRVerifyRequest,
    GPSValidateRequest, LocationPingRequest, ConfirmRequest, RateUpdateRequest,
    OrderResponse, OrderListResponse, AcceptOrderResponse, TransitionResponse, TrackingResponse,
    OTPGenerateResponse, QRCodeResponse, GPSValidationResponse, GPSPointResponse,
    ConfirmResponse, ConfirmationResponse, CommissionResponse, EarningsSummaryResponse,
    CommissionRatesResponse,
)
from pda_logistics.services.assignment_service import AssignmentService
from pda_logistics.services.commission_service import CommissionService
from pda_logistics.services.confirmation_service import ConfirmationService
from pda_logistics.services.order_lifecycle_service import OrderLifecycleService, TransitionResult
from pda_logistics.services.order_state_machine import get_status_flow
from pda_logistics.api.deps import DB, Dispatcher

router = APIRouter(prefix="/logistics", tags=["Logistics"])


def _transition_response(result: Optional[TransitionResult]) -> Optional[TransitionResponse]:
    if result is None:
        return None
    return TransitionResponse(
        order_id=result.order_id,
        order_number=result.order_number,
        from_status=result.from_status,
        to_status=result.to_status,
        action=result.action,
        released=result.released,
        notifications_sent=result.notifications_sent,
    )


# ==================== Orders ====================

@router.post("/orders", response_model=OrderResponse, status_code=201)
async def create_order(data: CreateOrderRequest, db: DB, dispatcher: Dispatcher):
    """Create an order in ORDER_PLACED with its receipt QR code."""
    service = OrderLifecycleService(db, dispatcher)
    values = data.model_dump()
    values["delivery_method"] = data.delivery_method.value
    values["order_kind"] = data.order_kind.value
    values["payment_status"] = data.payment_status.value
    order = await service.initialize_order(**values)
    return OrderResponse.model_validate(order)


@router.get("/orders/available", response_model=OrderListResponse)
async def list_available_orders(
    db: DB,
    agent_id: Optional[int] = None,
    order_kind: Optional[OrderKind] = None,
    limit: int = Query(50, ge=1, le=200),
):
    """Unassigned orders an agent can claim."""
    orders = await AssignmentService(db).get_available_orders(
        agent_id=agent_id,
        order_kind=order_kind.value if order_kind else None,
        limit=limit,
    )
    return OrderListResponse(items=[OrderResponse.model_validate(o) for o in orders], total=len(orders))


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, db: DB):
    order = await OrderLifecycleService(db).get_order(order_id)
    return OrderResponse.model_validate(order)


@router.get("/orders/{order_id}/tracking", response_model=TrackingResponse)
async def get_order_tracking(
    order_id: int,
    db: DB,
    gps_limit: int = Query(settings.GPS_TRAIL_LIMIT, ge=1, le=500),
):
    """Order with status history, confirmations, GPS trail and commission lines."""
    tracking = await OrderLifecycleService(db).get_order_tracking(order_id, gps_limit)
    return TrackingResponse.model_validate(tracking, from_attributes=True)


@router.post("/orders/{order_id}/payment/confirm", response_model=TransitionResponse)
async def confirm_payment(order_id: int, data: PaymentConfirmRequest, db: DB, dispatcher: Dispatcher):
    result = await OrderLifecycleService(db, dispatcher).confirm_payment(order_id, data.actor_id, data.reason)
    return _transition_response(result)


@router.post("/orders/{order_id}/accept", response_model=AcceptOrderResponse)
async def accept_order(order_id: int, data: AcceptOrderRequest, db: DB, dispatcher: Dispatcher):
    """Claim an order for an agent. 409 if another agent got it first."""
    result = await AssignmentService(db, dispatcher).accept_order(
        order_id,
        data.agent_id,
        data.order_kind.value if data.order_kind else None,
    )
    return AcceptOrderResponse(
        order=OrderResponse.model_validate(result.order),
        delivery_code=result.delivery_code,
        agent_commission=result.commission.agent_commission,
        platform_commission=result.commission.platform_retained,
    )


@router.post("/orders/{order_id}/status", response_model=TransitionResponse)
async def update_order_status(order_id: int, data: TransitionRequest, db: DB, dispatcher: Dispatcher):
    result = await OrderLifecycleService(db, dispatcher).transition(
        order_id,
        data.status,
        actor_id=data.actor_id,
        reason=data.reason,
        location=data.location,
        metadata=data.metadata,
        require_confirmation=not data.override_confirmation,
    )
    return _transition_response(result)


# ==================== Confirmations ====================

@router.post("/orders/{order_id}/otp", response_model=OTPGenerateResponse, status_code=201)
async def generate_otp(order_id: int, data: OTPGenerateRequest, db: DB):
    service = ConfirmationService(db)
    code = await service.generate_otp(
        order_id, data.confirmation_type.value, data.target_role, data.target_user_id
    )
    return OTPGenerateResponse(
        order_id=order_id,
        confirmation_type=data.confirmation_type.value,
        code=code,
        expires_in_minutes=service.otp_expiry_minutes,
    )


@router.post("/orders/{order_id}/otp/verify")
async def verify_otp(order_id: int, data: OTPVerifyRequest, db: DB):
    await ConfirmationService(db).verify_otp(
        order_id, data.code, data.confirmation_type.value, data.verifier_id
    )
    return {"order_id": order_id, "verified": True}


@router.get("/orders/{order_id}/qr/{qr_type}", response_model=QRCodeResponse)
async def get_qr_code(order_id: int, qr_type: QRCodeType, db: DB):
    """Return the order's QR code of this type, creating it on first request."""
    service = ConfirmationService(db)
    await service.get_order(order_id)
    qr_record = await service.generate_qr(order_id, qr_type.value)
    return QRCodeResponse.model_validate(qr_record)


@router.post("/qr/verify")
async def verify_qr_code(data: QRVerifyRequest, db: DB):
    qr_record = await ConfirmationService(db).verify_qr(data.qr_data, order_id=data.order_id)
    return {"order_id": qr_record.order_id, "qr_type": qr_record.qr_type, "valid": True}


@router.post("/orders/{order_id}/gps/validate", response_model=GPSValidationResponse)
async def validate_location(order_id: int, data: GPSValidateRequest, db: DB):
    service = ConfirmationService(db)
    await service.get_order(order_id)
    result = await service.validate_location(
        order_id,
        data.latitude,
        data.longitude,
        data.accuracy,
        data.expected_latitude,
        data.expected_longitude,
        user_id=data.user_id,
        tolerance_meters=data.tolerance_meters,
    )
    await db.commit()
    return GPSValidationResponse(
        within_radius=result.within_radius,
        distance_meters=result.distance_meters,
        tolerance_meters=result.tolerance_meters,
    )


@router.post("/orders/{order_id}/gps/ping", response_model=GPSPointResponse, status_code=201)
async def record_location(order_id: int, data: LocationPingRequest, db: DB):
    point = await ConfirmationService(db).record_location(
        order_id, data.user_id, data.latitude, data.longitude, data.accuracy
    )
    return GPSPointResponse.model_validate(point)


@router.post("/orders/{order_id}/confirmations", response_model=ConfirmResponse, status_code=201)
async def confirm_handover(order_id: int, data: ConfirmRequest, db: DB, dispatcher: Dispatcher):
    """
    Record a handover confirmation.

    When the order is waiting for this confirmation the gated status change
    happens in the same call and is returned under ``transition``.
    """
    outcome = await ConfirmationService(db).confirm(
        order_id,
        data.confirmation_type.value,
        data.method.value,
        data.confirmer_role,
        data.confirmer_id,
        otp_code=data.otp_code,
        qr_data=data.qr_data,
        delivery_code=data.delivery_code,
        confirmation_data=data.confirmation_data,
        latitude=data.latitude,
        longitude=data.longitude,
        accuracy=data.accuracy,
        lifecycle=OrderLifecycleService(db, dispatcher),
    )
    gps = None
    if outcome.gps:
        gps = GPSValidationResponse(
            within_radius=outcome.gps.within_radius,
            distance_meters=outcome.gps.distance_meters,
            tolerance_meters=outcome.gps.tolerance_meters,
        )
    return ConfirmResponse(
        confirmation=ConfirmationResponse.model_validate(outcome.confirmation),
        gps=gps,
        transition=_transition_response(outcome.transition),
    )


@router.get("/orders/{order_id}/confirmations", response_model=List[ConfirmationResponse])
async def list_confirmations(order_id: int, db: DB):
    confirmations = await ConfirmationService(db).get_confirmations(order_id)
    return [ConfirmationResponse.model_validate(c) for c in confirmations]


# ==================== Commissions ====================

@router.get("/orders/{order_id}/commissions", response_model=List[CommissionResponse])
async def list_order_commissions(order_id: int, db: DB):
    commissions = await CommissionService(db).get_order_commissions(order_id)
    return [CommissionResponse.model_validate(c) for c in commissions]


@router.get("/agents/{agent_id}/orders", response_model=OrderListResponse)
async def list_agent_orders(agent_id: int, db: DB):
    orders = await AssignmentService(db).get_agent_active_orders(agent_id)
    return OrderListResponse(items=[OrderResponse.model_validate(o) for o in orders], total=len(orders))


@router.get("/agents/{agent_id}/earnings", response_model=EarningsSummaryResponse)
async def get_agent_earnings(agent_id: int, db: DB):
    summary = await CommissionService(db).get_agent_earnings_summary(agent_id)
    return EarningsSummaryResponse.model_validate(summary, from_attributes=True)


@router.get("/commission-rates", response_model=CommissionRatesResponse)
async def get_commission_rates(db: DB):
    rates = await CommissionService(db).load_rates()
    return CommissionRatesResponse(rates=rates.as_dict())


@router.put("/commission-rates", response_model=CommissionRatesResponse)
async def update_commission_rates(data: RateUpdateRequest, db: DB):
    """Admin rate update. Unknown keys or values outside 0..100 are rejected with 400."""
    rates = await CommissionService(db).update_commission_rates(data.rates, data.admin_id)
    return CommissionRatesResponse(rates=rates.as_dict())


@router.get("/status-flow/{delivery_method}")
async def status_flow(delivery_method: DeliveryMethod):
    return {"delivery_method": delivery_method.value, "statuses": get_status_flow(delivery_method.value)}
