from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthorized

TOKEN_TYPE = "access"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="access-token")


def issue_access_token(user_id: int) -> str:
    """Sign an access token; issuance normally lives in the login service."""
    return _serializer().dumps({"sub": user_id, "type": TOKEN_TYPE})


def verify_access_token(token: str, max_age_secs: Optional[int] = None) -> int:
    settings = get_settings()
    max_age = max_age_secs or settings.access_token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise Unauthorized("Access token has expired.") from exc
    except BadSignature as exc:
        raise Unauthorized("Invalid access token.") from exc

    if not isinstance(data, dict) or data.get("type") != TOKEN_TYPE:
        raise Unauthorized("Invalid token type.")
    user_id = data.get("sub")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise Unauthorized("Invalid access token.")
    return user_id


def user_id_from_authorization(header: Optional[str]) -> int:
    scheme, _, token = (header or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Access token is required.")
    return verify_access_token(token.strip())
