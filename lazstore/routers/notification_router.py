from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import crud
from ..auth import require_permission
from ..database import get_db
from ..permissions import Action
from ..schemas import NotificationLogOut, UserOut

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("/logs", response_model=List[NotificationLogOut])
def notification_logs(
    skip: int = 0,
    limit: int = 100,
    current_admin: UserOut = Depends(require_permission(Action.VIEW_SYSTEM_LOGS)),
    db: Session = Depends(get_db),
):
    """Every push attempt, newest first."""
    return crud.get_notification_logs(db, skip=skip, limit=limit)
