"""
Identity & profile management.

Binds an authenticated identity to its `user` profile row, keeps a
session-scoped store per access token, and derives role capabilities.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database

from auth_provider import SIGNED_IN, USER_UPDATED, AuthProvider, Identity, Session
from database import now, to_dict, translate_errors
from errors import (
    AuthError,
    ConflictError,
    MarketplaceError,
    PermissionDeniedError,
    ProfileUpdateError,
    ValidationError,
)
from schemas import OrderStatus, Role, User

logger = logging.getLogger(__name__)

SELF_EDITABLE_FIELDS = ("full_name", "phone", "address")


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------
class Capabilities(BaseModel):
    role: Role
    is_admin: bool
    is_seller: bool
    is_buyer: bool
    can_manage_users: bool
    can_manage_products: bool
    can_view_analytics: bool
    can_manage_settings: bool


def to_role(value: Any) -> Role:
    try:
        return Role(value)
    except ValueError:
        return Role.buyer


def capabilities(role: Any) -> Capabilities:
    """The only place capabilities are derived from a role."""
    role = to_role(role)
    admin = role == Role.admin
    return Capabilities(
        role=role,
        is_admin=admin,
        is_seller=admin or role == Role.seller,
        # sellers shop too
        is_buyer=True,
        can_manage_users=admin,
        can_manage_products=admin,
        can_view_analytics=admin,
        can_manage_settings=admin,
    )


def has_role(role: Any, required: Role) -> bool:
    role = to_role(role)
    return role == required or role == Role.admin


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------
class SessionStore:
    """State cached for one signed-in session: the profile and form drafts."""

    def __init__(self, identity: Identity, expires_at: Optional[datetime] = None):
        self.identity = identity
        self.expires_at = expires_at
        self.profile: Optional[Dict[str, Any]] = None
        self._drafts: Dict[str, Dict[str, Any]] = {}

    def save_draft(self, name: str, data: Dict[str, Any]) -> None:
        self._drafts[name] = dict(data)

    def load_draft(self, name: str) -> Optional[Dict[str, Any]]:
        draft = self._drafts.get(name)
        return dict(draft) if draft is not None else None

    def clear_draft(self, name: str) -> None:
        self._drafts.pop(name, None)

    def clear(self) -> None:
        self.profile = None
        self._drafts.clear()

    def expired(self, at: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= at


class CurrentUser(BaseModel):
    session: Session
    profile: Optional[Dict[str, Any]] = None
    capabilities: Capabilities

    @property
    def id(self) -> str:
        return self.session.identity.id

    @property
    def role(self) -> Role:
        return self.capabilities.role


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class ProfileManager:
    def __init__(self, database: Database, auth: AuthProvider):
        self.db = database
        self.auth = auth
        self._sessions: Dict[str, SessionStore] = {}
        # request handlers run on a threadpool
        self._lock = threading.Lock()
        self._unsubscribe = auth.on_auth_state_change(self._on_auth_change)

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            stores = list(self._sessions.values())
            self._sessions.clear()
        for store in stores:
            store.clear()

    def _on_auth_change(self, event: str, session: Optional[Session]) -> None:
        if session is not None and event in (SIGNED_IN, USER_UPDATED):
            self.bootstrap(session.identity, token=session.access_token, expires_at=session.expires_at)

    def store_for(self, token: str) -> Optional[SessionStore]:
        with self._lock:
            return self._sessions.get(token)

    def _store(self, token: str, identity: Identity, expires_at: Optional[datetime] = None) -> SessionStore:
        """Get or create the store for `token`, dropping stores of expired sessions on the way."""
        with self._lock:
            stamp = now()
            for stale_token, stale in list(self._sessions.items()):
                if stale.expired(stamp):
                    stale.clear()
                    del self._sessions[stale_token]
            store = self._sessions.get(token)
            if store is None:
                store = self._sessions[token] = SessionStore(identity, expires_at)
            elif expires_at is not None:
                store.expires_at = expires_at
            return store

    def _drop(self, token: Optional[str]) -> None:
        with self._lock:
            store = self._sessions.pop(token, None)
        if store is not None:
            store.clear()

    def invalidate(self, user_id: str) -> None:
        """Drop cached profiles of `user_id`; the next request reloads them."""
        with self._lock:
            stores = list(self._sessions.values())
        for store in stores:
            if store.identity.id == user_id:
                store.profile = None

    # ------------------------------------------------------------ bootstrap
    def _fetch(self, user_id: str) -> Optional[Dict[str, Any]]:
        with translate_errors("fetch profile"):
            return to_dict(self.db["user"].find_one({"_id": user_id}))

    def _insert(self, identity: Identity, full_name: str, role: Role) -> Dict[str, Any]:
        """Insert a profile row; on a uniqueness conflict use the row that won."""
        try:
            user = User(email=identity.email, full_name=full_name, role=role)
        except PydanticValidationError as e:
            raise ValidationError("Invalid profile data", field="email") from e
        stamp = now()
        doc = {"_id": identity.id, **user.model_dump(mode="json"), "created_at": stamp, "updated_at": stamp}
        try:
            with translate_errors("create profile"):
                self.db["user"].insert_one(doc)
        except ConflictError:
            logger.info("Profile %s already exists, fetching existing profile", identity.id)
            existing = self._fetch(identity.id)
            if existing is None:
                raise
            return existing
        return self._fetch(identity.id)

    def bootstrap(self, identity: Identity, token: Optional[str] = None,
                  expires_at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Load the profile for `identity`, creating it from the identity
        metadata when missing. Backend failures are logged and yield None;
        the session stays signed in with buyer capabilities.
        """
        try:
            profile = self._fetch(identity.id)
            if profile is None:
                meta = identity.metadata or {}
                full_name = meta.get("full_name") or identity.email.split("@")[0]
                profile = self._insert(identity, full_name, to_role(meta.get("role") or Role.buyer))
        except MarketplaceError as e:
            logger.error("Error bootstrapping profile %s: %s", identity.id, e)
            profile = None

        if token is not None:
            self._store(token, identity, expires_at).profile = profile
        return profile

    # ---------------------------------------------------------- auth flows
    def sign_up(self, email: str, password: str, full_name: str, role: Role = Role.buyer):
        if not (full_name or "").strip():
            raise ValidationError("Please enter your full name", field="full_name")
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError("Invalid role", field="role")
        if role == Role.admin:
            raise ValidationError("Cannot sign up as admin", field="role")

        session = self.auth.sign_up(email, password, {"full_name": full_name, "role": role.value})
        try:
            profile = self._insert(session.identity, full_name, role)
        except MarketplaceError as e:
            logger.error("Account created but profile setup incomplete: %s", e)
            profile = None
        self._store(session.access_token, session.identity, session.expires_at).profile = profile
        return session, profile

    def sign_in(self, email: str, password: str) -> Session:
        # the SIGNED_IN notification bootstraps the profile
        return self.auth.sign_in_with_password(email, password)

    def sign_out(self, token: str) -> None:
        self._drop(token)
        try:
            self.auth.sign_out(token)
        except MarketplaceError as e:
            logger.warning("Sign out warning: %s", e)

    def current(self, token: Optional[str]) -> CurrentUser:
        session = self.auth.get_session(token)
        if session is None:
            self._drop(token)
            raise AuthError()
        profile = self._store(session.access_token, session.identity, session.expires_at).profile
        if profile is None:
            profile = self.bootstrap(session.identity, token=session.access_token, expires_at=session.expires_at)
        role = profile.get("role") if profile else None
        return CurrentUser(session=session, profile=profile, capabilities=capabilities(role))

    # -------------------------------------------------------------- updates
    def update_profile(self, token: Optional[str], patch: Dict[str, Any]) -> Dict[str, Any]:
        session = self.auth.get_session(token)
        if session is None:
            raise ProfileUpdateError("No active session")
        updates = {k: v for k, v in patch.items() if k in SELF_EDITABLE_FIELDS}
        if "full_name" in updates and not (updates["full_name"] or "").strip():
            raise ValidationError("Please enter your full name", field="full_name")
        updates["updated_at"] = now()
        with translate_errors("update profile"):
            self.db["user"].update_one({"_id": session.identity.id}, {"$set": updates})
        profile = self._fetch(session.identity.id)
        if profile is None:
            raise ProfileUpdateError("Profile not found")
        self._store(session.access_token, session.identity, session.expires_at).profile = profile
        return profile

    def change_password(self, token: str, new_password: str, confirm_password: str) -> None:
        if new_password != confirm_password:
            raise ValidationError("New passwords do not match", field="confirm_password")
        self.auth.update_user(token, password=new_password)

    def change_email(self, token: str, new_email: str) -> Dict[str, Any]:
        session = self.auth.get_session(token)
        if session is None:
            raise AuthError()
        new_email = (new_email or "").strip().lower()
        if not new_email or "@" not in new_email:
            raise ValidationError("Please enter a valid email address", field="email")
        if new_email == session.identity.email:
            raise ValidationError("New email must be different from current email", field="email")
        try:
            self.auth.update_user(token, email=new_email)
        except ConflictError:
            raise ConflictError("Email already registered")
        with translate_errors("update profile email"):
            self.db["user"].update_one({"_id": session.identity.id},
                                       {"$set": {"email": new_email, "updated_at": now()}})
        return self.bootstrap(session.identity, token=token)


def require_role(user: CurrentUser, required: Role) -> CurrentUser:
    if not has_role(user.role, required):
        raise PermissionDeniedError(f"{required.value} access required")
    return user


def profile_stats(database: Database, user_id: str, role: Any) -> Dict[str, Any]:
    """Numbers shown on the profile page; sellers see their shop, buyers their purchases."""
    caps = capabilities(role)
    with translate_errors("profile stats"):
        if caps.is_seller:
            orders = list(database["order"].find({"seller_id": user_id}, {"total_amount": 1, "status": 1}))
            delivered = [o for o in orders if o.get("status") == OrderStatus.delivered.value]
            return {
                "total_products": database["product"].count_documents({"seller_id": user_id}),
                "total_sales": len(delivered),
                "total_revenue": round(sum(float(o.get("total_amount", 0)) for o in delivered), 2),
                "pending_orders": sum(1 for o in orders if o.get("status") == OrderStatus.pending.value),
            }
        orders = list(database["order"].find({"buyer_id": user_id}, {"total_amount": 1, "status": 1}))
    delivered = [o for o in orders if o.get("status") == OrderStatus.delivered.value]
    return {
        "total_orders": len(orders),
        "completed_orders": len(delivered),
        "total_spent": round(sum(float(o.get("total_amount", 0)) for o in delivered), 2),
        "pending_orders": sum(1 for o in orders if o.get("status") == OrderStatus.pending.value),
    }
