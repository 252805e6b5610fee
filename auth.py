from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthorized


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="owner-token")


def issue_owner_token(owner_id: str) -> str:
    if not owner_id:
        raise ValueError("owner_id is required")
    return _serializer().dumps({"o": owner_id})


def verify_owner_token(token: str, max_age: Optional[int] = None) -> str:
    if max_age is None:
        max_age = get_settings().auth_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise Unauthorized("Token expired") from exc
    except BadSignature as exc:
        raise Unauthorized("Invalid token") from exc

    owner_id = data.get("o") if isinstance(data, dict) else None
    if not owner_id or not isinstance(owner_id, str):
        raise Unauthorized("Invalid token")
    return owner_id


def owner_from_authorization(header: Optional[str]) -> str:
    if not header:
        raise Unauthorized("Missing Authorization header")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Expected a Bearer token")
    return verify_owner_token(token.strip())
