import bcrypt, secrets
from datetime import timedelta
from jose import jwt, JWTError
from .config import settings
from .utils import utcnow

ALGO = "HS256"


class InvalidToken(Exception):
    pass


class InvalidCredentials(Exception):
    pass


def _password_matches(candidate: str) -> bool:
    stored_hash = settings.admin_password_hash
    if stored_hash:
        try:
            return bcrypt.checkpw(candidate.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            # malformed hash in config
            return False
    return bool(settings.admin_password) and secrets.compare_digest(candidate, settings.admin_password)


def make_operator_token(operator_id: int | None = None) -> str:
    operator_id = settings.admin_operator_id if operator_id is None else operator_id
    exp = utcnow() + timedelta(hours=settings.admin_token_hours)
    payload = {"sub": str(operator_id), "role": "operator", "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)


def login_operator(password: str) -> str:
    """Exchange the operator password for a token.

    ``ADMIN_PASSWORD_HASH`` (bcrypt) wins over a plaintext ``ADMIN_PASSWORD``;
    with neither configured nobody can log in.
    """
    if not _password_matches(password):
        raise InvalidCredentials("Wrong password")
    return make_operator_token()


def decode_operator_token(token: str) -> int:
    """Return the operator id carried by ``token``."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGO])
    except JWTError as exc:
        raise InvalidToken("Invalid or expired token") from exc
    if payload.get("role") != "operator":
        raise InvalidToken("Not an operator token")
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidToken("Token carries no operator id") from exc
