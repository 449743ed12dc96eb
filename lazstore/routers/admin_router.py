from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import config, crud
from ..auth import require_permission
from ..database import get_db
from ..permissions import Action
from ..schemas import DataBackup, SystemSettings, UserOut

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/settings", response_model=SystemSettings)
def system_settings(
    current_admin: UserOut = Depends(require_permission(Action.ACCESS_SYSTEM_SETTINGS)),
):
    """Runtime settings of this instance. Secrets are never included."""
    return SystemSettings(
        cart_hold_minutes=config.CART_HOLD_MINUTES,
        cart_sweep_interval_seconds=config.CART_SWEEP_INTERVAL_SECONDS,
        cart_sweeper_enabled=config.CART_SWEEPER_ENABLED,
        low_stock_threshold=config.LOW_STOCK_THRESHOLD,
        access_token_expire_minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES,
        publish_order_events=config.PUBLISH_ORDER_EVENTS,
        events_exchange=config.EVENTS_EXCHANGE,
    )


@router.get("/backup", response_model=DataBackup)
def backup(
    current_admin: UserOut = Depends(require_permission(Action.BACKUP_DATA)),
    db: Session = Depends(get_db),
):
    """Export users (without password hashes), products, orders, sales and returns as JSON."""
    return {
        "generated_at": crud.utcnow(),
        "users": crud.get_users(db, limit=None),
        "products": crud.get_products(db, limit=None),
        "orders": crud.get_orders(db, limit=None),
        "sales": crud.get_sales(db, limit=None),
        "returns": crud.get_sale_returns(db, limit=None),
    }
