"""
Сервис для аутентификации администраторов флота.
"""
from datetime import datetime, timedelta
from typing import Optional
import base64
import hashlib
import logging
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session
from config.settings import settings
from backend.models.admin import Admin

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def _prepare_password(password: str) -> str:
    """
    bcrypt учитывает только первые 72 байта пароля.
    Длинные пароли предварительно хешируются SHA-256, короткие передаются как есть.
    """
    if password is None:
        return ""
    raw = password.encode("utf-8")
    if len(raw) <= 72:
        return password
    return "sha256$" + base64.urlsafe_b64encode(hashlib.sha256(raw).digest()).decode("ascii")


def _jwt_secret() -> str:
    return settings.JWT_SECRET_KEY or settings.SECRET_KEY


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(_prepare_password(plain_password), hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(_prepare_password(password))


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Выпустить JWT для администратора (поле sub = id администратора)."""
    payload = data.copy()
    lifetime = expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    payload.update({"exp": datetime.utcnow() + lifetime, "type": "access"})
    return jwt.encode(payload, _jwt_secret(), algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str, token_type: str = "access") -> Optional[dict]:
    """Декодировать токен; None, если подпись/срок/тип не подходят."""
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload


def authenticate_admin(db: Session, username: str, password: str) -> Optional[Admin]:
    """Проверить логин и пароль. Неактивные учётные записи не допускаются."""
    admin = get_admin_by_username(db, username)
    if not admin or not admin.is_active:
        return None
    if not verify_password(password, admin.password_hash):
        return None
    admin.last_login = datetime.utcnow()
    db.commit()
    return admin


def get_admin_by_username(db: Session, username: str) -> Optional[Admin]:
    return db.query(Admin).filter(Admin.username == username).first()


def get_admin_by_id(db: Session, admin_id: str) -> Optional[Admin]:
    return db.query(Admin).filter(Admin.id == admin_id).first()


def create_admin(
    db: Session,
    username: str,
    password: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    is_super_admin: bool = False,
) -> Admin:
    admin = Admin(
        username=username,
        email=email,
        password_hash=get_password_hash(password),
        full_name=full_name,
        is_super_admin=is_super_admin,
        is_active=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin


def ensure_initial_admin(db: Session) -> Optional[Admin]:
    """
    Создать первого администратора из INITIAL_ADMIN_USERNAME / INITIAL_ADMIN_PASSWORD,
    если в базе ещё нет ни одного.
    """
    if not settings.INITIAL_ADMIN_USERNAME or not settings.INITIAL_ADMIN_PASSWORD:
        return None
    if db.query(Admin).count() > 0:
        return None
    admin = create_admin(
        db,
        username=settings.INITIAL_ADMIN_USERNAME,
        password=settings.INITIAL_ADMIN_PASSWORD,
        is_super_admin=True,
    )
    logger.info(f"Создан начальный администратор {admin.username}")
    return admin
