"""
API endpoints для аутентификации.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from datetime import timedelta
from backend.database import get_db
from backend.services.auth_service import authenticate_admin, create_access_token
from backend.api.schemas import LoginRequest, Token, AdminResponse
from backend.api.dependencies import get_current_admin
from backend.models.admin import Admin
from config.settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=Token)
async def login(
    login_data: LoginRequest,
    db: Session = Depends(get_db),
):
    """
    Вход администратора в систему.
    """
    admin = authenticate_admin(db, login_data.username, login_data.password)
    if not admin:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    access_token_expires = timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": admin.id, "username": admin.username},
        expires_delta=access_token_expires,
    )

    return Token(
        access_token=access_token,
        token_type="bearer",
        admin=AdminResponse.model_validate(admin),
    )


@router.get("/me", response_model=AdminResponse)
async def get_current_user_info(
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Получение информации о текущем администраторе.
    """
    return AdminResponse.model_validate(current_admin)
