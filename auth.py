import time
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="user-session")


def issue_session_token(user_id: int) -> str:
    serializer = _serializer()
    token_data = {"u": user_id, "ts": int(time.time())}
    return serializer.dumps(token_data)


def read_session_token(token: str, max_age_hours: Optional[int] = None) -> int:
    """Return the user id carried by a session token, or raise ValueError."""
    if max_age_hours is None:
        max_age_hours = get_settings().session_max_age_hours
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=max_age_hours * 3600)
    except BadSignature as exc:
        raise ValueError("Invalid or expired session token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise ValueError("Invalid or expired session token")
    return user_id


def hash_password(password: str) -> str:
    encoded = password.encode("utf-8")
    if len(encoded) > 72:
        raise ValueError("Password must be at most 72 bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > 72:
        return False
    return bcrypt.checkpw(encoded, hashed_password.encode("utf-8"))
