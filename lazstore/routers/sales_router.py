from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import crud, sales
from ..auth import get_current_user, require_permission
from ..database import get_db
from ..errors import LazStoreError, to_http_exception
from ..permissions import Action
from ..schemas import SaleCreate, SaleOut, SalesReport, UserOut

router = APIRouter(prefix="/sales", tags=["Sales"])


@router.post("/", response_model=SaleOut, status_code=status.HTTP_201_CREATED)
def process_sale(
    body: SaleCreate,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Ring up an in-store sale. Stock is taken immediately."""
    try:
        return sales.record_sale(db, current_user, product_id=body.product_id, quantity=body.quantity)
    except LazStoreError as e:
        raise to_http_exception(e)


@router.get("/", response_model=List[SaleOut])
def list_sales(
    start: Optional[datetime] = Query(None, description="**From** (inclusive)"),
    end: Optional[datetime] = Query(None, description="**Until** (exclusive)"),
    cashier_id: Optional[int] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    current_user: UserOut = Depends(require_permission(Action.VIEW_SALES_REPORTS)),
    db: Session = Depends(get_db),
):
    return crud.get_sales(db, start=start, end=end, cashier_id=cashier_id, skip=skip, limit=limit)


@router.get("/report", response_model=SalesReport)
def report(
    start: Optional[datetime] = Query(None, description="**From** (inclusive)"),
    end: Optional[datetime] = Query(None, description="**Until** (exclusive)"),
    current_user: UserOut = Depends(require_permission(Action.VIEW_SALES_REPORTS)),
    db: Session = Depends(get_db),
):
    """Sales and refund totals over a date range."""
    return sales.sales_report(db, start=start, end=end)


@router.get("/{sale_id}", response_model=SaleOut)
def get_sale(
    sale_id: int,
    current_user: UserOut = Depends(require_permission(Action.VIEW_SALES_REPORTS)),
    db: Session = Depends(get_db),
):
    sale = crud.get_sale(db, sale_id)
    if not sale:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")
    return sale


@router.delete("/{sale_id}", response_model=SaleOut)
def void_sale(
    sale_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Void a sale and put its units back in stock."""
    try:
        return sales.void_sale(db, current_user, sale_id)
    except LazStoreError as e:
        raise to_http_exception(e)
