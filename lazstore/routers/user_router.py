from typing import List, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud
from ..auth import create_access_token, get_current_user, get_password_hash, require_permission, verify_password
from ..database import get_db
from ..permissions import Action, can_view_user_details, is_allowed, permission_level
from ..schemas import DeviceTokenUpdate, Role, RoleUpdate, Token, UserCreate, UserOut

router = APIRouter(prefix="/users", tags=["Users"])


def _create(db: Session, user: UserCreate, role: Role):
    try:
        return crud.create_user(
            db,
            {
                "username": user.username,
                "email": user.email,
                "phone_number": user.phone_number,
                "address": user.address,
                "hashed_password": get_password_hash(user.password),
                "role": role,
            },
        )
    except ValueError as e:
        if str(e) == "duplicate_username":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already registered")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/signup", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def signup(user: UserCreate, db: Session = Depends(get_db)):
    """Register a new customer account. Staff accounts are created by an admin."""
    return _create(db, user, Role.CUSTOMER)


@router.post("/login", response_model=Token)
def login(
    username: str = Form(..., description="**Username**", examples=[""]),
    password: str = Form(..., description="**Password**", examples=[""]),
    db: Session = Depends(get_db),
):
    user = crud.get_user_by_username(db, username=username)
    if not user or not user.is_active or not verify_password(password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(data={"sub": user.username, "role": user.role})
    return {"access_token": access_token, "token_type": "bearer"}


@router.get("/me", response_model=UserOut)
def my_profile(current_user: UserOut = Depends(get_current_user)):
    return current_user


@router.get("/me/permissions")
def my_permissions(current_user: UserOut = Depends(get_current_user)):
    return {
        "role": current_user.role.value,
        "level": permission_level(current_user.role),
        "allowed": sorted(a.value for a in Action if is_allowed(current_user.role, a)),
    }


@router.put("/me/device-token", response_model=UserOut)
def register_device_token(
    body: DeviceTokenUpdate,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Store the push token of the caller's device."""
    return crud.set_device_token(db, current_user.id, body.device_token)


@router.get("/", response_model=List[UserOut])
def list_users(
    skip: int = 0,
    limit: int = 100,
    role: Optional[Role] = None,
    current_admin: UserOut = Depends(require_permission(Action.VIEW_ALL_USERS)),
    db: Session = Depends(get_db),
):
    return crud.get_users(db, skip=skip, limit=limit, role=role)


@router.get("/{user_id}", response_model=UserOut)
def get_user(
    user_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not can_view_user_details(current_user.role, current_user.id, user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions.")
    user = crud.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.post("/employees", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_employee(
    user: UserCreate,
    current_admin: UserOut = Depends(require_permission(Action.CREATE_USERS)),
    db: Session = Depends(get_db),
):
    return _create(db, user, Role.EMPLOYEE)


@router.patch("/{user_id}/role", response_model=UserOut)
def change_role(
    user_id: int,
    body: RoleUpdate,
    current_admin: UserOut = Depends(require_permission(Action.EDIT_USER_ROLES)),
    db: Session = Depends(get_db),
):
    if user_id == current_admin.id and body.role is not Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot demote themselves")
    user = crud.set_user_role(db, user_id, body.role)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.delete("/{user_id}", response_model=UserOut)
def deactivate_user(
    user_id: int,
    current_admin: UserOut = Depends(require_permission(Action.DELETE_USERS)),
    db: Session = Depends(get_db),
):
    """Deactivate an account. Accounts are never hard-deleted."""
    if user_id == current_admin.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot deactivate yourself")
    user = crud.deactivate_user(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user
