#--- START OF FILE: src/healguard/interfaces/api/routers/auth.py ---
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import List

from healguard.infrastructure.db.base import get_session
from healguard.infrastructure.db.repository import OperatorRepository
from healguard.interfaces.api.deps import require_roles
from healguard.interfaces.api.schemas import TokenOut
from healguard.interfaces.api.security import auth

router = APIRouter(prefix="/auth", tags=["Authentication"])

class OperatorCreate(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8)
    roles: List[str] = Field(default_factory=lambda: ["operator"])

@router.post("/register", status_code=status.HTTP_201_CREATED)
def register_operator(
    operator_in: OperatorCreate,
    db: Session = Depends(get_session),
    _admin=Depends(require_roles({"ADMIN"})),
):
    """Creates an operator account. Admin only."""
    repo = OperatorRepository(db)
    if repo.find_by_email(operator_in.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )
    operator = repo.add(operator_in.email, auth.hash_password(operator_in.password), operator_in.roles)
    db.commit()
    return {"message": f"Operator {operator.email} created successfully", "id": operator.id}


@router.post("/token", response_model=TokenOut)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_session)
):
    """Login with email (as username) and password."""
    operator = OperatorRepository(db).find_by_email(form_data.username)
    if not operator or not operator.is_active or not auth.verify_password(form_data.password, operator.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = auth.create_access_token(subject=operator.email, roles=operator.roles or [])
    return {"access_token": access_token, "token_type": "bearer"}
#--- END OF FILE ---
