from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_permission
from ..cart_holds import CartHoldManager
from ..database import get_db
from ..errors import LazStoreError, to_http_exception
from ..permissions import Action, can_view_cart
from ..schemas import CartItemCreate, CartItemOut, CartQuantityUpdate, UserOut

router = APIRouter(prefix="/cart", tags=["Cart"])

customer_only = require_permission(Action.USE_CART)


def get_cart_manager(db: Session = Depends(get_db)) -> CartHoldManager:
    return CartHoldManager(db)


def _own_item(manager: CartHoldManager, cart_item_id: int, current_user: UserOut):
    item = next((i for i in manager.list_for_user(current_user.id) if i.id == cart_item_id), None)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="This item is not in your cart")
    return item


@router.get("/", response_model=List[CartItemOut])
def get_my_cart(
    current_user: UserOut = Depends(customer_only),
    manager: CartHoldManager = Depends(get_cart_manager),
):
    return manager.list_for_user(current_user.id)


@router.get("/users/{user_id}", response_model=List[CartItemOut])
def get_user_cart(
    user_id: int,
    current_user: UserOut = Depends(get_current_user),
    manager: CartHoldManager = Depends(get_cart_manager),
):
    """Look at someone's cart: admins see every cart, customers only their own."""
    if not can_view_cart(current_user.role, current_user.id, user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions.")
    return manager.list_for_user(user_id)


@router.post("/items", response_model=CartItemOut, status_code=status.HTTP_201_CREATED)
def add_to_cart(
    body: CartItemCreate,
    current_user: UserOut = Depends(customer_only),
    manager: CartHoldManager = Depends(get_cart_manager),
):
    """Add a product to the cart and hold its stock for a few minutes."""
    try:
        return manager.add_hold(current_user.id, body.product_id, body.quantity)
    except LazStoreError as e:
        raise to_http_exception(e)


@router.post("/items/{cart_item_id}/extend", response_model=CartItemOut)
def extend_hold(
    cart_item_id: int,
    current_user: UserOut = Depends(customer_only),
    manager: CartHoldManager = Depends(get_cart_manager),
):
    _own_item(manager, cart_item_id, current_user)
    try:
        return manager.extend_hold(cart_item_id)
    except LazStoreError as e:
        raise to_http_exception(e)


@router.put("/items/{cart_item_id}")
def set_quantity(
    cart_item_id: int,
    body: CartQuantityUpdate,
    current_user: UserOut = Depends(customer_only),
    manager: CartHoldManager = Depends(get_cart_manager),
):
    """Change a quantity. A quantity of zero or less removes the item."""
    _own_item(manager, cart_item_id, current_user)
    try:
        item = manager.set_quantity(cart_item_id, body.quantity)
    except LazStoreError as e:
        raise to_http_exception(e)
    if item is None:
        return {"removed": True, "id": cart_item_id}
    return CartItemOut.model_validate(item)


@router.delete("/items/{cart_item_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_from_cart(
    cart_item_id: int,
    current_user: UserOut = Depends(customer_only),
    manager: CartHoldManager = Depends(get_cart_manager),
):
    _own_item(manager, cart_item_id, current_user)
    manager.remove(cart_item_id)
    return None


@router.delete("/", status_code=status.HTTP_204_NO_CONTENT)
def clear_my_cart(
    current_user: UserOut = Depends(customer_only),
    manager: CartHoldManager = Depends(get_cart_manager),
):
    manager.clear(current_user.id)
    return None
