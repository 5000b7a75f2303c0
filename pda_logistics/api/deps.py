from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pda_logistics.database import get_db
from pda_logistics.services.notification_service import NotificationDispatcher


def get_dispatcher() -> NotificationDispatcher:
    """Dispatcher built from NOTIFICATION_SINK."""
    return NotificationDispatcher()


DB = Annotated[AsyncSession, Depends(get_db)]
Dispatcher = Annotated[NotificationDispatcher, Depends(get_dispatcher)]
