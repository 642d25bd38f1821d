"""
Identity boundary.

Authentication is done upstream by the identity provider, which forwards the
user id (and e-mail) of the signed-in user. This module turns that id into a
SessionContext and applies the approval gate:

- the very first account is an approved admin;
- an account that already owns products is approved (and promoted to admin
  in its profile) whatever its stored flag says, so owners who predate the
  approval workflow are never locked out;
- every other new account waits for an admin to approve it.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from errors import NotFound, ValidationError
from loggers import get_logger
from schemas import UserProfile

logger = get_logger("commerce.auth")


@dataclass(frozen=True)
class SessionContext:
    user_id: str
    email: Optional[str] = None
    approved: bool = False
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def ensure_profile(store, uid: str, email: Optional[str] = None) -> SessionContext:
    """Load or create the profile of `uid`, record the login and resolve approval."""
    now = datetime.now(timezone.utc)
    profile = store.get_profile(uid)
    has_legacy_data = store.has_products(uid)

    if profile is None:
        first_user = not store.has_any_profile()
        profile = store.create_profile(UserProfile(
            uid=uid,
            email=email,
            is_approved=first_user,
            role="admin" if first_user else "user",
            created_at=now,
            last_login=now,
        ))
        logger.info("Created profile for %s (first user: %s)", uid, first_user)
    else:
        updates = {"last_login": now}
        if has_legacy_data and not profile.is_approved:
            updates.update(is_approved=True, role="admin")
            logger.info("Auto-approving %s: account already holds inventory data", uid)
        store.update_profile(uid, **updates)
        profile = profile.model_copy(update=updates)

    approved = profile.is_approved or has_legacy_data
    return SessionContext(user_id=uid, email=profile.email or email, approved=approved, role=profile.role)


def approve_user(store, session: SessionContext, uid: str) -> None:
    if not session.is_admin:
        raise ValidationError("Seul un administrateur peut valider un compte.")
    if store.get_profile(uid) is None:
        raise NotFound(f"user {uid} not found")
    store.update_profile(uid, is_approved=True)
    logger.info("%s approved account %s", session.user_id, uid)


def record_login(store, uid: str) -> None:
    """Stamp last_login for a session that skips ensure_profile."""
    store.update_profile(uid, last_login=datetime.now(timezone.utc))
