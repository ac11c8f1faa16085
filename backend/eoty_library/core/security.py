from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from eoty_library.core.config import settings


def create_access_token(
    subject: str,
    role: str,
    *,
    chapter_id: str | None = None,
    enrolled_courses: list[str] | None = None,
    teaching_courses: list[str] | None = None,
) -> str:
    expires_at = datetime.now(timezone.utc) + timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {
        "sub": subject,
        "role": role,
        "chapter_id": chapter_id,
        "enrolled_courses": list(enrolled_courses or []),
        "teaching_courses": list(teaching_courses or []),
        "exp": expires_at,
    }
    return jwt.encode(
        payload,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_access_token(token: str) -> dict | None:
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None
