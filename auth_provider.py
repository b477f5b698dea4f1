"""
Credential and session provider.

Stores password credentials in the `credential` collection and opaque bearer
sessions in `authsession`. Listeners registered with on_auth_state_change are
notified of SIGNED_IN, SIGNED_OUT and USER_UPDATED events.
"""
import hashlib
import hmac
import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field
from pymongo.database import Database

from database import now, translate_errors
from errors import AuthError, ConflictError, ValidationError

logger = logging.getLogger(__name__)

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "168"))
MIN_PASSWORD_LENGTH = 6

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
USER_UPDATED = "USER_UPDATED"


class Identity(BaseModel):
    id: str
    email: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    access_token: str
    identity: Identity
    expires_at: datetime


AuthListener = Callable[[str, Optional[Session]], None]


def _hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000).hex()


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class AuthProvider:
    def __init__(self, database: Database, session_ttl_hours: Optional[int] = None):
        self.db = database
        self.session_ttl = timedelta(hours=session_ttl_hours or SESSION_TTL_HOURS)
        self._listeners: List[AuthListener] = []

    # ------------------------------------------------------------ listeners
    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.error("Auth listener failed on %s", event, exc_info=True)

    # ------------------------------------------------------------- sessions
    def _identity(self, cred: Dict[str, Any]) -> Identity:
        return Identity(id=cred["_id"], email=cred["email"], metadata=cred.get("metadata") or {})

    def _create_session(self, identity: Identity) -> Session:
        token = secrets.token_urlsafe(32)
        expires_at = now() + self.session_ttl
        with translate_errors("create session"):
            self.db["authsession"].insert_one({
                "_id": token,
                "user_id": identity.id,
                "expires_at": expires_at,
                "created_at": now(),
            })
        return Session(access_token=token, identity=identity, expires_at=expires_at)

    def get_session(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        with translate_errors("read session"):
            row = self.db["authsession"].find_one({"_id": token})
            if not row:
                return None
            if _aware(row["expires_at"]) <= now():
                self.db["authsession"].delete_one({"_id": token})
                return None
            cred = self.db["credential"].find_one({"_id": row["user_id"]})
        if not cred:
            return None
        return Session(access_token=token, identity=self._identity(cred), expires_at=_aware(row["expires_at"]))

    # ---------------------------------------------------------- credentials
    def sign_up(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> Session:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("Please enter a valid email address", field="email")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError("Password must be at least 6 characters", field="password")

        salt = secrets.token_hex(16)
        cred = {
            "_id": uuid.uuid4().hex,
            "email": email,
            "salt": salt,
            "password_hash": _hash_password(password, salt),
            "metadata": metadata or {},
            "created_at": now(),
        }
        try:
            with translate_errors("sign up"):
                self.db["credential"].insert_one(cred)
        except ConflictError:
            raise ConflictError("User already registered")

        session = self._create_session(self._identity(cred))
        logger.info("Signed up %s", email)
        self._emit(SIGNED_IN, session)
        return session

    def sign_in_with_password(self, email: str, password: str) -> Session:
        email = (email or "").strip().lower()
        with translate_errors("sign in"):
            cred = self.db["credential"].find_one({"email": email})
        if not cred or not hmac.compare_digest(cred["password_hash"], _hash_password(password or "", cred["salt"])):
            raise AuthError("Invalid login credentials")
        session = self._create_session(self._identity(cred))
        self._emit(SIGNED_IN, session)
        return session

    def sign_out(self, token: str, scope: str = "global") -> None:
        with translate_errors("sign out"):
            row = self.db["authsession"].find_one({"_id": token})
            if row and scope == "global":
                self.db["authsession"].delete_many({"user_id": row["user_id"]})
            else:
                self.db["authsession"].delete_one({"_id": token})
        self._emit(SIGNED_OUT, None)

    def update_user(self, token: str, email: Optional[str] = None, password: Optional[str] = None) -> Identity:
        session = self.get_session(token)
        if session is None:
            raise AuthError()
        updates: Dict[str, Any] = {}
        if email is not None:
            updates["email"] = email.strip().lower()
        if password is not None:
            if len(password) < MIN_PASSWORD_LENGTH:
                raise ValidationError("Password must be at least 6 characters", field="password")
            salt = secrets.token_hex(16)
            updates["salt"] = salt
            updates["password_hash"] = _hash_password(password, salt)
        if updates:
            with translate_errors("update user"):
                self.db["credential"].update_one({"_id": session.identity.id}, {"$set": updates})
        updated = self.get_session(token)
        if updated is None:
            # session expired between the write and the re-read
            raise AuthError()
        self._emit(USER_UPDATED, updated)
        return updated.identity
