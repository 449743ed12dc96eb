from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import crud, sales
from ..auth import get_current_user, require_permission
from ..database import get_db
from ..errors import LazStoreError, to_http_exception
from ..permissions import Action
from ..schemas import ReturnCreate, SaleReturnOut, UserOut

router = APIRouter(prefix="/returns", tags=["Returns"])


@router.post("/", response_model=SaleReturnOut, status_code=status.HTTP_201_CREATED)
def process_return(
    body: ReturnCreate,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Take back a sale: its units are restocked and the refund waits for an admin."""
    try:
        return sales.process_return(db, current_user, sale_id=body.sale_id, reason=body.reason)
    except LazStoreError as e:
        raise to_http_exception(e)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A return reason is required")


@router.get("/", response_model=List[SaleReturnOut])
def return_history(
    start: Optional[datetime] = Query(None, description="**From** (inclusive)"),
    end: Optional[datetime] = Query(None, description="**Until** (exclusive)"),
    refund_status: Optional[Literal["PENDING", "APPROVED"]] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    current_user: UserOut = Depends(require_permission(Action.VIEW_RETURN_HISTORY)),
    db: Session = Depends(get_db),
):
    return crud.get_sale_returns(db, start=start, end=end, status=refund_status, skip=skip, limit=limit)


@router.post("/{return_id}/approve", response_model=SaleReturnOut)
def approve_refund(
    return_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return sales.approve_refund(db, current_user, return_id)
    except LazStoreError as e:
        raise to_http_exception(e)
