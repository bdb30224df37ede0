"""
Сервис для работы с системными настройками и шифрованием чувствительных значений.
"""
from typing import Optional, Any
from sqlalchemy.orm import Session
from backend.models.setting import Setting
from cryptography.fernet import Fernet, InvalidToken
from config.settings import settings as app_settings
import base64
import hashlib
import json
import logging

logger = logging.getLogger(__name__)


def _get_encryption_key() -> bytes:
    """Получить ключ шифрования (производный от SECRET_KEY)."""
    digest = hashlib.sha256(app_settings.SECRET_KEY.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_value(value: str) -> str:
    """Зашифровать значение."""
    f = Fernet(_get_encryption_key())
    return f.encrypt(value.encode()).decode()


def decrypt_value(encrypted_value: str) -> str:
    """
    Расшифровать значение.
    Значения, записанные внешним CRUD-слоем в открытом виде, возвращаем как есть.
    """
    try:
        f = Fernet(_get_encryption_key())
        return f.decrypt(encrypted_value.encode()).decode()
    except (InvalidToken, ValueError):
        return encrypted_value


def get_setting_by_key(db: Session, key: str) -> Optional[Setting]:
    """Получить настройку по ключу."""
    return db.query(Setting).filter(Setting.key == key).first()



def get_setting_value(db: Session, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Получить значение настройки (с расшифровкой, если необходимо)."""
    setting = get_setting_by_key(db, key)
    if not setting:
        return default

    value = setting.value
    if setting.is_encrypted and value:
        value = decrypt_value(value)

    # Попытка преобразовать в JSON, если возможно
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


def get_int_setting(db: Session, key: str, default: int) -> int:
    """Получить целочисленную настройку; некорректное значение заменяется дефолтом."""
    value = get_setting_value(db, key, default)
    try:
        return int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        logger.warning(f"Некорректное значение настройки {key}={value!r}, используем {default}")
        return default


def set_setting(
    db: Session,
    key: str,
    value: Any,
    category: str = "general",
    description: Optional[str] = None,
    is_encrypted: bool = False,
) -> Setting:
    """Установить или обновить настройку."""
    setting = get_setting_by_key(db, key)

    if isinstance(value, (dict, list, bool, int, float)):
        value_str = json.dumps(value)
    else:
        value_str = str(value)

    if is_encrypted:
        value_str = encrypt_value(value_str)

    if setting:
        setting.value = value_str
        if category:
            setting.category = category
        if description is not None:
            setting.description = description
        setting.is_encrypted = is_encrypted
    else:
        setting = Setting(
            key=key,
            value=value_str,
            category=category,
            description=description or f"Setting: {key}",
            is_encrypted=is_encrypted,
        )
        db.add(setting)

    db.commit()
    db.refresh(setting)
    return setting
