"""
Commission Service

Splits an order's platform margin between the parties that handled it.

The buyer-paid (final) amount already contains the platform margin:

    base             = final / (1 + platform_margin_rate)
    platform_margin  = final - base
    maintenance      = platform_margin * system_maintenance_rate
    remaining_margin = platform_margin - maintenance

Party shares are percentages of the remaining margin, allocated in priority
order (delivery agent, pickup site manager, referral) and capped at what is
still undistributed. Whatever is left becomes a PLATFORM line, so
``base + sum(lines) == final`` holds exactly at two decimal places.
"""
import logging
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pda_logistics.models.order import Order, OrderStatus, DeliveryMethod
from pda_logistics.models.commission import (
    CommissionTransaction,
    AgentEarning,
    CommissionRateSetting,
    CommissionType,
    CommissionStatus,
    EarningStatus,
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    """Round to the smallest currency unit."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionRates:
    """
    Commission percentages (21 means 21%).

    Field names double as keys in ``commission_rate_settings``.
    """
    platform_margin_rate: Decimal = Decimal("21")
    system_maintenance_rate: Decimal = Decimal("1")
    fast_delivery_agent_rate: Decimal = Decimal("70")
    psm_helped_rate: Decimal = Decimal("25")
    psm_received_rate: Decimal = Decimal("15")
    pickup_delivery_agent_rate: Decimal = Decimal("70")
    home_delivery_fee_rate: Decimal = Decimal("6")
    referral_rate: Decimal = Decimal("15")

    @classmethod
    def keys(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "CommissionRates":
        """Build rates from a key/value mapping; unknown keys are ignored, missing keys use defaults."""
        known = {k: Decimal(str(v)) for k, v in values.items() if k in cls.keys() and v is not None}
        return cls(**known)

    def as_dict(self) -> Dict[str, Decimal]:
        return asdict(self)


def validate_rates(values: Dict[str, Any]) -> Dict[str, Decimal]:
    """Check keys and ranges of a rate update. Raises ValueError."""
    cleaned = {}
    for key, value in values.items():
        if key not in CommissionRates.keys():
            raise ValueError(f"Unknown commission rate '{key}'")
        try:
            rate = Decimal(str(value))
        except ArithmeticError:
            raise ValueError(f"Commission rate '{key}' must be a number")
        if not rate.is_finite():
            raise ValueError(f"Commission rate '{key}' must be a finite number")
        if rate < 0 or rate > HUNDRED:
            raise ValueError(f"Commission rate '{key}' must be between 0 and 100")
        cleaned[key] = rate
    return cleaned


@dataclass(frozen=True)
class CommissionContext:
    """Everything the calculator needs to know about an order."""
    final_amount: Decimal
    delivery_method: str = DeliveryMethod.PICKUP.value
    agent_id: Optional[int] = None
    pickup_site_manager_id: Optional[int] = None
    psm_helped: bool = False
    referrer_id: Optional[int] = None

    @classmethod
    def from_order(cls, order: Order, agent_id: Optional[int] = None) -> "CommissionContext":
        return cls(
            final_amount=Decimal(str(order.total_amount)),
            delivery_method=order.delivery_method,
            agent_id=agent_id if agent_id is not None else order.agent_id,
            pickup_site_manager_id=order.pickup_site_manager_id,
            psm_helped=bool(order.psm_helped),
            referrer_id=order.referrer_id,
        )


@dataclass
class CommissionLine:
    commission_type: CommissionType
    amount: Decimal
    percentage: Decimal
    base_amount: Decimal
    party_id: Optional[int] = None


@dataclass
class CommissionBreakdown:
    final_amount: Decimal
    base_amount: Decimal = ZERO
    platform_margin: Decimal = ZERO
    system_maintenance: Decimal = ZERO
    remaining_margin: Decimal = ZERO
    home_delivery_fee: Decimal = ZERO
    lines: List[CommissionLine] = field(default_factory=list)

    def amount_for(self, commission_type: CommissionType) -> Decimal:
        return sum((l.amount for l in self.lines if l.commission_type == commission_type), ZERO)

    @property
    def agent_commission(self) -> Decimal:
        return (
            self.amount_for(CommissionType.FAST_DELIVERY_AGENT)
            + self.amount_for(CommissionType.PICKUP_DELIVERY_AGENT)
        )

    @property
    def platform_retained(self) -> Decimal:
        return self.amount_for(CommissionType.PLATFORM)

    @property
    def party_lines(self) -> List[CommissionLine]:
        return [l for l in self.lines if l.party_id is not None]

    @property
    def total(self) -> Decimal:
        return sum((l.amount for l in self.lines), ZERO)


def calculate_commission(context: CommissionContext, rates: CommissionRates = None) -> CommissionBreakdown:
    """
    Pure commission split for one order.

    Returns an empty breakdown (no lines) when the final amount is not positive.
    """
    rates = rates or CommissionRates()
    final_amount = money(context.final_amount)
    breakdown = CommissionBreakdown(final_amount=final_amount)

    if final_amount <= 0:
        return breakdown

    base_amount = money(final_amount / (1 + rates.platform_margin_rate / HUNDRED))
    platform_margin = final_amount - base_amount
    system_maintenance = money(platform_margin * rates.system_maintenance_rate / HUNDRED)
    remaining_margin = platform_margin - system_maintenance

    breakdown.base_amount = base_amount
    breakdown.platform_margin = platform_margin
    breakdown.system_maintenance = system_maintenance
    breakdown.remaining_margin = remaining_margin

    is_home_delivery = context.delivery_method == DeliveryMethod.HOME_DELIVERY.value
    if is_home_delivery:
        # Reported to the buyer-facing pricing; not a distribution of the margin
        breakdown.home_delivery_fee = money(base_amount * rates.home_delivery_fee_rate / HUNDRED)

    if system_maintenance > 0:
        breakdown.lines.append(CommissionLine(
            commission_type=CommissionType.SYSTEM_MAINTENANCE,
            amount=system_maintenance,
            percentage=rates.system_maintenance_rate,
            base_amount=platform_margin,
        ))

    # (type, party, rate) in allocation priority order
    claims = []
    if context.agent_id is not None:
        if is_home_delivery:
            claims.append((CommissionType.FAST_DELIVERY_AGENT, context.agent_id, rates.fast_delivery_agent_rate))
        else:
            claims.append((CommissionType.PICKUP_DELIVERY_AGENT, context.agent_id, rates.pickup_delivery_agent_rate))
    if not is_home_delivery and context.pickup_site_manager_id is not None:
        psm_rate = rates.psm_helped_rate if context.psm_helped else rates.psm_received_rate
        claims.append((CommissionType.PICKUP_SITE_MANAGER, context.pickup_site_manager_id, psm_rate))
    if context.referrer_id is not None:
        claims.append((CommissionType.REFERRAL, context.referrer_id, rates.referral_rate))

    undistributed = remaining_margin
    for commission_type, party_id, rate in claims:
        amount = min(money(remaining_margin * rate / HUNDRED), undistributed)
        if amount <= 0:
            continue
        undistributed -= amount
        breakdown.lines.append(CommissionLine(
            commission_type=commission_type,
            amount=amount,
            percentage=rate,
            base_amount=remaining_margin,
            party_id=party_id,
        ))

    if undistributed > 0:
        breakdown.lines.append(CommissionLine(
            commission_type=CommissionType.PLATFORM,
            amount=undistributed,
            percentage=(undistributed * HUNDRED / remaining_margin).quantize(FOUR_PLACES, rounding=ROUND_HALF_UP),
            base_amount=remaining_margin,
        ))

    return breakdown


class CommissionService:
    """
    Persists commission lines and moves them through their lifecycle.

    PENDING -> APPROVED (grace period passed) -> PAID, or CANCELLED on
    dispute/cancellation. PAID rows are never touched again.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_rates(self) -> CommissionRates:
        """
        Load rates once for the current transaction, falling back to defaults.

        The lookup runs in a savepoint so a failed query leaves the
        surrounding transaction (an order claim, say) usable on PostgreSQL.
        """
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    select(CommissionRateSetting.setting_key, CommissionRateSetting.setting_value)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            logger.warning(f"Commission rate lookup failed, using defaults: {e}")
            return CommissionRates()
        return CommissionRates.from_mapping({key: value for key, value in rows})

    async def persist_commissions(
        self,
        order: Order,
        breakdown: CommissionBreakdown,
    ) -> List[CommissionTransaction]:
        """
        Write commission lines and paired earnings rows for an order.

        Guarded by ``orders.commission_calculated``: a second call for the
        same order writes nothing and returns an empty list.
        """
        claimed = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.commission_calculated.is_(False))
            .values(
                commission_calculated=True,
                base_amount=breakdown.base_amount,
                platform_margin=breakdown.platform_margin,
                agent_commission=breakdown.agent_commission,
                platform_commission=breakdown.platform_retained,
                home_delivery_fee=breakdown.home_delivery_fee,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info(f"Commission already calculated for order {order.order_number}, skipping")
            return []

        transactions = []
        for line in breakdown.lines:
            transaction = CommissionTransaction(
                order_id=order.id,
                party_id=line.party_id,
                commission_type=line.commission_type.value,
                amount=line.amount,
                percentage=line.percentage,
                base_amount=line.base_amount,
                status=CommissionStatus.PENDING.value,
            )
            self.db.add(transaction)
            transactions.append(transaction)
        await self.db.flush()

        for transaction in transactions:
            if transaction.party_id is None:
                continue
            self.db.add(AgentEarning(
                agent_id=transaction.party_id,
                order_id=order.id,
                commission_transaction_id=transaction.id,
                amount=transaction.amount,
                earnings_type=transaction.commission_type,
                status=EarningStatus.PENDING.value,
            ))
        await self.db.flush()

        logger.info(
            f"Commission recorded for order {order.order_number}: "
            f"{len(transactions)} lines, agent {breakdown.agent_commission}, "
            f"platform {breakdown.platform_retained}"
        )
        return transactions

    async def calculate_and_persist(self, order: Order, agent_id: Optional[int] = None) -> CommissionBreakdown:
        rates = await self.load_rates()
        breakdown = calculate_commission(CommissionContext.from_order(order, agent_id), rates)
        await self.persist_commissions(order, breakdown)
        return breakdown

    async def schedule_approval(self, order_id: int, due_at: datetime) -> int:
        """Start the dispute grace period for an order's pending commissions."""
        result = await self.db.execute(
            update(CommissionTransaction)
            .where(
                CommissionTransaction.order_id == order_id,
                CommissionTransaction.status == CommissionStatus.PENDING.value,
            )
            .values(approval_due_at=due_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def approve_due_commissions(self, now: Optional[datetime] = None) -> int:
        """
        Approve pending commissions whose grace period has passed.

        Orders that were disputed or cancelled in the meantime are skipped.
        Returns the number of commission rows approved.
        """
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            select(CommissionTransaction.id)
            .join(Order, Order.id == CommissionTransaction.order_id)
            .where(
                CommissionTransaction.status == CommissionStatus.PENDING.value,
                CommissionTransaction.approval_due_at.is_not(None),
                CommissionTransaction.approval_due_at <= now,
                Order.status.not_in([OrderStatus.DISPUTED.value, OrderStatus.CANCELLED.value]),
            )
        )
        due_ids = list(result.scalars().all())
        if not due_ids:
            return 0

        approved = await self.db.execute(
            update(CommissionTransaction)
            .where(
                CommissionTransaction.id.in_(due_ids),
                CommissionTransaction.status == CommissionStatus.PENDING.value,
            )
            .values(status=CommissionStatus.APPROVED.value, approved_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(AgentEarning)
            .where(
                AgentEarning.commission_transaction_id.in_(due_ids),
                AgentEarning.status == EarningStatus.PENDING.value,
            )
            .values(status=EarningStatus.APPROVED.value, approved_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Approved {approved.rowcount} commission lines past their grace period")
        return approved.rowcount

    async def reverse_commissions(self, order_id: int) -> int:
        """Cancel unpaid commissions of a disputed or cancelled order."""
        result = await self.db.execute(
            update(CommissionTransaction)
            .where(
                CommissionTransaction.order_id == order_id,
                CommissionTransaction.status.in_([
                    CommissionStatus.PENDING.value,
                    CommissionStatus.APPROVED.value,
                ]),
            )
            .values(status=CommissionStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(AgentEarning)
            .where(
                AgentEarning.order_id == order_id,
                AgentEarning.status.in_([EarningStatus.PENDING.value, EarningStatus.APPROVED.value]),
            )
            .values(status=EarningStatus.REVERSED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Reversed {result.rowcount} commission lines for order {order_id}")
        return result.rowcount

    async def get_order_commissions(self, order_id: int) -> List[CommissionTransaction]:
        result = await self.db.execute(
            select(CommissionTransaction)
            .where(CommissionTransaction.order_id == order_id)
            .order_by(CommissionTransaction.id)
        )
        return list(result.scalars().all())

    async def get_agent_earnings_summary(self, agent_id: int) -> Dict[str, Any]:
        """Totals per earnings status plus the individual entries, newest first."""
        totals_result = await self.db.execute(
            select(AgentEarning.status, func.count(AgentEarning.id), func.coalesce(func.sum(AgentEarning.amount), 0))
            .where(AgentEarning.agent_id == agent_id)
            .group_by(AgentEarning.status)
        )
        totals = {status.value: {"count": 0, "amount": ZERO} for status in EarningStatus}
        for status, count, amount in totals_result.all():
            totals[status] = {"count": count, "amount": money(amount)}

        entries_result = await self.db.execute(
            select(AgentEarning)
            .where(AgentEarning.agent_id == agent_id)
            .order_by(AgentEarning.id.desc())
        )
        entries = list(entries_result.scalars().all())

        # Reversed earnings were never owed
        total_earned = sum(
            (v["amount"] for k, v in totals.items() if k != EarningStatus.REVERSED.value),
            ZERO,
        )
        return {
            "agent_id": agent_id,
            "total_earned": total_earned,
            "pending": totals[EarningStatus.PENDING.value]["amount"],
            "approved": totals[EarningStatus.APPROVED.value]["amount"],
            "paid": totals[EarningStatus.PAID.value]["amount"],
            "reversed": totals[EarningStatus.REVERSED.value]["amount"],
            "order_count": len({e.order_id for e in entries}),
            "earnings": entries,
        }

    async def update_commission_rates(self, rates: Dict[str, Any], admin_id: int) -> CommissionRates:
        """
        Upsert rate settings. Raises ValueError for unknown keys or out-of-range values.
        """
        cleaned = validate_rates(rates)

        result = await self.db.execute(
            select(CommissionRateSetting).where(CommissionRateSetting.setting_key.in_(list(cleaned)))
        )
        existing = {row.setting_key: row for row in result.scalars().all()}

        for key, value in cleaned.items():
            setting = existing.get(key)
            if setting:
                setting.setting_value = value
                setting.updated_by = admin_id
            else:
                self.db.add(CommissionRateSetting(setting_key=key, setting_value=value, updated_by=admin_id))
        await self.db.commit()

        logger.info(f"Commission rates updated by admin {admin_id}: {', '.join(f'{k}={v}' for k, v in cleaned.items())}")
        return await self.load_rates()
