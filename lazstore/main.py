import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__, crud
from .auth import get_password_hash
from .config import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    CART_SWEEPER_ENABLED,
    LOG_LEVEL,
    PUBLISH_ORDER_EVENTS,
)
from .database import SessionLocal, engine
from .events import order_feed
from .messaging import forward_order_change
from .models import Base
from .routers import (
    admin_router,
    cart_router,
    notification_router,
    order_router,
    product_router,
    returns_router,
    sales_router,
    user_router,
)
from .schemas import Role
from .sweeper import start_cart_hold_sweeper

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="LAZ Store Service",
    description="Products, carts with stock holds, and role-gated order lifecycle",
    version=__version__,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
Base.metadata.create_all(bind=engine)

app.include_router(user_router.router)
app.include_router(product_router.router)
app.include_router(cart_router.router)
app.include_router(order_router.router)
app.include_router(notification_router.router)
app.include_router(sales_router.router)
app.include_router(returns_router.router)
app.include_router(admin_router.router)

# Handles owned by startup, released on shutdown
_background = {}


def init_admin_user():
    db = SessionLocal()
    try:
        admin_user = crud.get_user_by_username(db, username=ADMIN_USERNAME)
        if not admin_user:
            crud.create_user(
                db,
                {
                    "username": ADMIN_USERNAME,
                    "email": ADMIN_EMAIL,
                    "hashed_password": get_password_hash(ADMIN_PASSWORD),
                    "role": Role.ADMIN,
                },
            )
            logger.info("Admin user created")
        elif admin_user.role != Role.ADMIN.value or not admin_user.is_active:
            admin_user.role = Role.ADMIN.value
            admin_user.is_active = True
            db.commit()
            logger.info("Admin user restored")
    except Exception:
        logger.exception("Error initializing admin user")
        db.rollback()
    finally:
        db.close()


@app.on_event("startup")
def _startup() -> None:
    init_admin_user()
    if CART_SWEEPER_ENABLED:
        _background["sweeper"] = start_cart_hold_sweeper()
    if PUBLISH_ORDER_EVENTS:
        _background["order_events"] = order_feed.subscribe(forward_order_change)


@app.on_event("shutdown")
def _shutdown() -> None:
    sweeper = _background.pop("sweeper", None)
    if sweeper is not None:
        sweeper.set()
    subscription = _background.pop("order_events", None)
    if subscription is not None:
        subscription.unsubscribe()


@app.get("/")
def root():
    return {
        "service": "LAZ Store Service",
        "status": "running",
        "version": __version__,
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "lazstore",
    }
