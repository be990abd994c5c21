import uuid
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError

from core.events import log_event, E
from core.exceptions import ValidationError
from core.log import get_logger
from core.models.base import utc_now
from core.models.user import User
from core.quota_service import DEFAULT_PLAN, PLAN_LIMITS

logger = get_logger(__name__)


def validate_email(email: str) -> str:
    value = str(email or "").strip()
    if not value or "@" not in value:
        raise ValidationError("Invalid email address")
    if len(value) > 255:
        raise ValidationError("Email address is too long")
    return value


def get_user_by_email(session, email: str) -> Optional[User]:
    value = str(email or "").strip()
    if not value:
        return None
    return session.query(User).filter(User.email == value).first()


def get_user_by_id(session, user_id: str) -> Optional[User]:
    value = str(user_id or "").strip()
    if not value:
        return None
    return session.query(User).filter(User.id == value).first()


def get_or_create_user(
    session,
    email: str,
    name: str = "",
    picture: str = "",
    now: Optional[datetime] = None,
) -> User:
    """
    按邮箱查找用户，不存在时以 free 套餐创建。
    并发首次登录时唯一约束冲突的一方回滚后重新读取胜出的记录。
    """
    address = validate_email(email)
    user = get_user_by_email(session, address)
    if user:
        return user

    now = now or utc_now()
    user = User(
        id=str(uuid.uuid4()),
        email=address,
        name=str(name or "").strip()[:255],
        picture=str(picture or "").strip()[:512],
        plan=DEFAULT_PLAN,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = get_user_by_email(session, address)
        if existing is None:
            raise
        return existing
    session.refresh(user)
    log_event(logger, E.USER_CREATE, user_id=user.id, plan=user.plan)
    return user


def update_plan(session, user_id: str, plan: str) -> User:
    tier = str(plan or "").strip().lower()
    if tier not in PLAN_LIMITS:
        raise ValidationError(f"Unknown plan: {plan}")
    user = get_user_by_id(session, user_id)
    if not user:
        raise ValidationError("User not found")
    previous = user.plan
    user.plan = tier
    user.updated_at = utc_now()
    session.commit()
    session.refresh(user)
    log_event(logger, E.USER_PLAN_CHANGE, user_id=user.id, before=previous, after=tier)
    return user


def update_profile(session, user: User, name: str = "", picture: str = "") -> User:
    changed = False
    name_text = str(name or "").strip()[:255]
    picture_text = str(picture or "").strip()[:512]
    if name_text and name_text != (user.name or ""):
        user.name = name_text
        changed = True
    if picture_text and picture_text != (user.picture or ""):
        user.picture = picture_text
        changed = True
    if changed:
        user.updated_at = utc_now()
        session.commit()
        session.refresh(user)
    return user


def serialize_user(user: User) -> Dict:
    return {
        "id": user.id,
        "email": user.email,
        "plan": user.plan,
        "name": user.name or "",
        "picture": user.picture or "",
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
