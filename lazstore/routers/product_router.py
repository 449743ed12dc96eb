from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import crud
from ..auth import require_permission
from ..config import LOW_STOCK_THRESHOLD
from ..database import get_db
from ..permissions import Action
from ..schemas import ProductOut, StockAdjustment, UserOut

router = APIRouter(prefix="/products", tags=["Products"])


def _raise_for_value_error(e: ValueError):
    if str(e) == "duplicate_product_name":
        raise HTTPException(status_code=409, detail="Product name already exists")
    if str(e) == "name_required":
        raise HTTPException(status_code=400, detail="Product name is required")
    if str(e) in ("insufficient_stock", "negative_quantity"):
        raise HTTPException(status_code=400, detail="Stock cannot go below zero")
    raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=list[ProductOut])
def view_products(
    skip: int = Query(0, ge=0, description="**Skip** number of products"),
    limit: int = Query(100, ge=1, le=1000, description="**Limit** number of products"),
    search: Optional[str] = Query(None, description="**Search** in name or shelf location"),
    current_user: UserOut = Depends(require_permission(Action.VIEW_PRODUCTS)),
    db: Session = Depends(get_db),
):
    return crud.get_products(db, skip=skip, limit=limit, search=search)


@router.get("/low-stock", response_model=list[ProductOut])
def view_low_stock(
    threshold: int = Query(LOW_STOCK_THRESHOLD, ge=0),
    current_user: UserOut = Depends(require_permission(Action.MANAGE_INVENTORY)),
    db: Session = Depends(get_db),
):
    return crud.get_low_stock_products(db, threshold)


@router.get("/{product_id}", response_model=ProductOut)
def view_product(
    product_id: int,
    current_user: UserOut = Depends(require_permission(Action.VIEW_PRODUCTS)),
    db: Session = Depends(get_db),
):
    product = crud.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post("/", response_model=ProductOut, status_code=201)
def create_product(
    name: str = Form(..., description="**Product name** (required)"),
    quantity: int = Form(..., ge=0, description="**Stock quantity** (must be >= 0)"),
    cost: float = Form(0, ge=0, description="**Cost** (optional)"),
    price: float = Form(..., gt=0, description="**Price** (must be greater than 0)"),
    shelf_location: Optional[str] = Form(None, description="**Shelf location** (optional)"),
    image_url: Optional[str] = Form(None, description="**Image URL** (optional)"),
    current_user: UserOut = Depends(require_permission(Action.ADD_PRODUCTS)),
    db: Session = Depends(get_db),
):
    product_data = {
        "name": name,
        "quantity": quantity,
        "cost": cost,
        "price": price,
        "shelf_location": shelf_location,
        "image_url": image_url,
    }
    try:
        return crud.create_product(db, product_data)
    except ValueError as e:
        _raise_for_value_error(e)
    except IntegrityError:
        # DB-level unique constraint (race conditions)
        db.rollback()
        raise HTTPException(status_code=409, detail="Product name already exists")


@router.patch("/{product_id}", response_model=ProductOut)
def update_product(
    product_id: int,
    name: Optional[str] = Form(None, description="**New name** (optional)"),
    quantity: Optional[int] = Form(None, ge=0, description="**New stock** (optional, >= 0)"),
    cost: Optional[float] = Form(None, ge=0, description="**New cost** (optional)"),
    price: Optional[float] = Form(None, gt=0, description="**New price** (optional, > 0)"),
    shelf_location: Optional[str] = Form(None, description="**New shelf location** (optional)"),
    image_url: Optional[str] = Form(None, description="**New image URL** (optional)"),
    current_user: UserOut = Depends(require_permission(Action.EDIT_PRODUCTS)),
    db: Session = Depends(get_db),
):
    update_data = {
        "name": name,
        "quantity": quantity,
        "cost": cost,
        "price": price,
        "shelf_location": shelf_location,
        "image_url": image_url,
    }
    update_data = {k: v for k, v in update_data.items() if v is not None}

    try:
        product = crud.update_product(db, product_id, update_data)
    except ValueError as e:
        _raise_for_value_error(e)
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Product name already exists")
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post("/{product_id}/stock", response_model=ProductOut)
def adjust_stock(
    product_id: int,
    body: StockAdjustment,
    current_user: UserOut = Depends(require_permission(Action.MANAGE_INVENTORY)),
    db: Session = Depends(get_db),
):
    """Add (positive delta) or remove (negative delta) units of stock."""
    try:
        product = crud.adjust_product_quantity(db, product_id, body.delta)
    except ValueError as e:
        _raise_for_value_error(e)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.delete("/{product_id}", response_model=ProductOut)
def delete_product(
    product_id: int,
    current_user: UserOut = Depends(require_permission(Action.DELETE_PRODUCTS)),
    db: Session = Depends(get_db),
):
    product = crud.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    # Serialize before the row is gone
    deleted = ProductOut.model_validate(product)
    crud.delete_product(db, product_id)
    return deleted
