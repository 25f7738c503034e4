import hashlib
import hmac
import secrets
from typing import Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

OTP_DIGITS = 6


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.needs_update(hashed)


def hash_session_token(token: str) -> str:
    # Sessions are stored as a one-way hash so a DB leak doesn't grant access.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


def new_otp_code() -> str:
    # 100000..999999, never a leading zero so the code always reads as 6 digits.
    return str(10 ** (OTP_DIGITS - 1) + secrets.randbelow(9 * 10 ** (OTP_DIGITS - 1)))


def hash_otp_code(code: str, challenge_token: str) -> str:
    # Bind the code to its challenge so a leaked hash can't be reused for another login.
    key = challenge_token.encode("utf-8")
    return "hmac256:" + hmac.new(key, code.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_otp_code(code: str, challenge_token: str, code_hash: Optional[str]) -> bool:
    if not code_hash:
        return False
    c = (code or "").strip().replace(" ", "")
    if not c.isdigit() or len(c) != OTP_DIGITS:
        return False
    return hmac.compare_digest(hash_otp_code(c, challenge_token), code_hash)
