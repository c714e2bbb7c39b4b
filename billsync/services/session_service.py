"""Singleton auth session with expiry, and the per-command database mode."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import delete

from billsync.core.config import settings
from billsync.errors import SessionExpired
from billsync.models import AuthSession
from billsync.security import sign_payload, verify_signature
from billsync.services.entity_store import LocalEntityStore
from billsync.time_utils import now_ms

log = logging.getLogger(__name__)

SESSION_ID = "current_session"
OWNER_ROLES = ("admin", "owner")


@dataclass(frozen=True)
class SessionContext:
    """Who is acting, for which store, until when. Passed explicitly to commands."""

    user_id: str
    email: str
    role: str
    store_id: Optional[str]
    employee_code: Optional[str]
    issued_at: int
    expires_at: int

    @property
    def is_owner(self) -> bool:
        return self.role in OWNER_ROLES

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        return (now_ms() if at_ms is None else at_ms) > self.expires_at

    def _signed_fields(self) -> dict:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "role": self.role,
            "store_id": self.store_id,
            "employee_code": self.employee_code,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }


class SessionManager:
    """Persists at most one session row. Expiry is one-way: an expired row is cleared on read."""

    def __init__(
        self,
        store: LocalEntityStore,
        *,
        duration_ms: int = settings.SESSION_DURATION_MS,
        secret: str = settings.SESSION_SECRET,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self.duration_ms = duration_ms
        self._secret = secret
        self._clock = clock

    def save_session(
        self,
        user_id: str,
        email: str,
        role: str,
        store_id: Optional[str] = None,
        employee_code: Optional[str] = None,
    ) -> SessionContext:
        now = self._clock()
        ctx = SessionContext(
            user_id=user_id,
            email=(email or "").strip().lower(),
            role=role,
            store_id=store_id,
            employee_code=employee_code,
            issued_at=now,
            expires_at=now + self.duration_ms,
        )
        with self._store.transaction() as session:
            row = session.get(AuthSession, SESSION_ID)
            if row is None:
                row = AuthSession(id=SESSION_ID)
                session.add(row)
            for key, value in ctx._signed_fields().items():
                setattr(row, key, value)
            row.signature = sign_payload(ctx._signed_fields(), self._secret)
        log.info("Session saved for %s (%s), expires in %s ms", ctx.email, ctx.role, self.duration_ms)
        return ctx

    def get_session(self) -> Optional[SessionContext]:
        with self._store.transaction() as session:
            row = session.get(AuthSession, SESSION_ID)
            if row is None:
                return None
            ctx = SessionContext(
                user_id=row.user_id,
                email=row.email,
                role=row.role,
                store_id=row.store_id,
                employee_code=row.employee_code,
                issued_at=row.issued_at,
                expires_at=row.expires_at,
            )
            if not verify_signature(ctx._signed_fields(), row.signature, self._secret):
                log.warning("Session signature mismatch; clearing session")
                session.delete(row)
                return None
            if ctx.is_expired(self._clock()):
                log.info("Session for %s expired; clearing", ctx.email)
                session.delete(row)
                return None
            return ctx

    def require_session(self) -> SessionContext:
        ctx = self.get_session()
        if ctx is None:
            raise SessionExpired("No active session; please sign in again")
        return ctx

    def clear_session(self) -> None:
        with self._store.transaction() as session:
            session.execute(delete(AuthSession).where(AuthSession.id == SESSION_ID))

    def remaining_ms(self) -> int:
        ctx = self.get_session()
        if ctx is None:
            return 0
        return max(0, ctx.expires_at - self._clock())

    def check(self, ctx: Optional[SessionContext]) -> SessionContext:
        """Raise ``SessionExpired`` unless ``ctx`` is present and still live."""
        if ctx is None or ctx.is_expired(self._clock()):
            raise SessionExpired("Session expired; please sign in again")
        return ctx


class DbMode(enum.Enum):
    LOCAL_FIRST = "local"
    REMOTE_DIRECT = "remote"


def select_mode(
    session: Optional[SessionContext],
    mode_flag: Optional[str],
    remote_authenticated: bool,
) -> DbMode:
    """Pick the data path for one command. Employees are always local-first."""
    if (mode_flag or "local").lower() != DbMode.REMOTE_DIRECT.value:
        return DbMode.LOCAL_FIRST
    if session is None or not session.is_owner:
        return DbMode.LOCAL_FIRST
    if not remote_authenticated:
        return DbMode.LOCAL_FIRST
    return DbMode.REMOTE_DIRECT


class ModeManager:
    """Re-evaluates the mode on every call; nothing is cached between commands."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        remote_authenticated: Callable[[], bool] = lambda: False,
        mode_flag: str = settings.DB_MODE,
    ):
        self._sessions = sessions
        self._remote_authenticated = remote_authenticated
        self._mode_flag = mode_flag

    @property
    def mode_flag(self) -> str:
        return self._mode_flag

    def set_mode_flag(self, flag: str) -> None:
        flag = (flag or "").lower()
        if flag not in (DbMode.LOCAL_FIRST.value, DbMode.REMOTE_DIRECT.value):
            raise ValueError(f"Unknown database mode: {flag!r}")
        self._mode_flag = flag

    def current_context(self) -> Optional[SessionContext]:
        return self._sessions.get_session()

    def mode_for(self, ctx: Optional[SessionContext]) -> DbMode:
        wants_remote = self._mode_flag == DbMode.REMOTE_DIRECT.value and ctx is not None and ctx.is_owner
        remote_ok = self._remote_authenticated() if wants_remote else False
        return select_mode(ctx, self._mode_flag, remote_ok)

    def current_mode(self) -> DbMode:
        return self.mode_for(self.current_context())
