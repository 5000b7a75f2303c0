"""
Commission and Order Monitoring Jobs

- Approve pending commissions once their dispute grace period has passed
- Notify the admin about open orders that have not changed for too long
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pda_logistics.config import settings
from pda_logistics.models.order import Order
from pda_logistics.models.notification import NotificationType
from pda_logistics.services.commission_service import CommissionService
from pda_logistics.services.notification_service import NotificationDispatcher, OrderSnapshot
from pda_logistics.services.order_state_machine import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


def _default_session_factory() -> async_sessionmaker[AsyncSession]:
    from pda_logistics.database import async_session_factory
    return async_session_factory


async def approve_due_commissions(
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> int:
    """
    Approve commission lines whose approval_due_at has passed.

    Lines of disputed or cancelled orders stay PENDING until reversed.
    Returns the number of lines approved.
    """
    session_factory = session_factory or _default_session_factory()
    async with session_factory() as session:
        try:
            approved = await CommissionService(session).approve_due_commissions(now)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return approved


async def flag_stuck_orders(
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    timeout_hours: Optional[int] = None,
) -> int:
    """
    Send ADMIN_ATTENTION_REQUIRED for open orders not updated within the timeout.

    Each order is flagged once per stall: ``stuck_flagged_at`` is stamped
    without touching ``updated_at``, and only a later update re-arms the
    alert. Returns the number of orders flagged.
    """
    session_factory = session_factory or _default_session_factory()
    dispatcher = dispatcher or NotificationDispatcher()
    now = now or datetime.now(timezone.utc)
    timeout_hours = settings.STUCK_ORDER_TIMEOUT_HOURS if timeout_hours is None else timeout_hours
    cutoff = now - timedelta(hours=timeout_hours)

    async with session_factory() as session:
        try:
            result = await session.execute(
                select(Order)
                .where(
                    Order.status.not_in([s.value for s in TERMINAL_STATUSES]),
                    Order.updated_at < cutoff,
                    or_(Order.stuck_flagged_at.is_(None), Order.stuck_flagged_at < Order.updated_at),
                )
                .order_by(Order.updated_at)
                .limit(100)
            )
            stuck = list(result.scalars().all())
            if stuck:
                await session.execute(
                    update(Order)
                    .where(Order.id.in_([o.id for o in stuck]))
                    .values(stuck_flagged_at=now, updated_at=Order.updated_at)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except Exception:
            await session.rollback()
            raise

    for order in stuck:
        await dispatcher.dispatch_safely(
            OrderSnapshot.from_order(order),
            NotificationType.ADMIN_ATTENTION_REQUIRED,
            {
                "reason": f"No status change for more than {timeout_hours} hours",
                "last_update": order.updated_at.isoformat() if order.updated_at else None,
            },
        )

    if stuck:
        logger.warning(f"Flagged {len(stuck)} orders stuck for more than {timeout_hours} hours")
    return len(stuck)


# ==================== Scheduler entry points ====================

async def approve_due_commissions_job() -> Dict[str, Any]:
    """Scheduler wrapper: log and swallow so one bad run doesn't stop the schedule."""
    start_time = datetime.now(timezone.utc)
    try:
        approved = await approve_due_commissions()
    except Exception as e:
        logger.error(f"Commission approval job failed: {e}")
        return {"status": "failed", "error": str(e)}

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    if approved:
        logger.info(f"Commission approval job approved {approved} lines in {duration:.2f}s")
    return {"status": "success", "approved": approved, "duration_seconds": duration}


async def flag_stuck_orders_job() -> Dict[str, Any]:
    try:
        flagged = await flag_stuck_orders()
    except Exception as e:
        logger.error(f"Stuck order check failed: {e}")
        return {"status": "failed", "error": str(e)}
    return {"status": "success", "flagged": flagged}
