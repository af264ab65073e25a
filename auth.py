from typing import Optional

from fastapi import Request
from itsdangerous import BadData, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session-token")


def issue_session_token(user_id: str) -> str:
    return _serializer().dumps({"u": user_id})


def resolve_session_token(token: str) -> Optional[str]:
    if not token:
        return None
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadData:
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("u")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id


def get_current_user_id(request: Request) -> Optional[str]:
    """Resolve the caller from a bearer token or the session cookie.

    Returns None instead of raising when no valid token is present.
    """
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return resolve_session_token(token.strip())
    return resolve_session_token(request.cookies.get("session", ""))
