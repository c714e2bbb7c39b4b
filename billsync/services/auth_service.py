"""Employee accounts, employee login and the offline owner login."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import delete

from billsync.core.config import settings
from billsync.errors import NotFound, ValidationError
from billsync.models import OfflineCredential
from billsync.security import hash_password, verify_password
from billsync.services.entity_store import LocalEntityStore
from billsync.services.identifier_service import EmployeeCodeGenerator
from billsync.services.session_service import SessionContext, SessionManager
from billsync.time_utils import utcnow
from billsync.validators import validate_email, validate_phone_number

log = logging.getLogger(__name__)

PWD_RE = re.compile(r"^(?=.*[A-Z])(?=.*[^A-Za-z0-9]).{8,}$")  # >=8, 1 uppercase, 1 special
EMPLOYEE_ROLES = ("employee", "cashier", "admin")


class AuthService:
    def __init__(
        self,
        store: LocalEntityStore,
        sessions: SessionManager,
        *,
        codes: Optional[EmployeeCodeGenerator] = None,
        offline_enabled: bool = settings.OFFLINE_LOGIN_ENABLED,
    ):
        self._store = store
        self._sessions = sessions
        self._codes = codes or EmployeeCodeGenerator(store)
        self.offline_enabled = offline_enabled

    # ------------------------------------------------------------------
    # Employees
    def create_employee(
        self,
        ctx: SessionContext,
        name: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        role: str = "employee",
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """Create an employee in the owner's current store.

        Returns (ok, message, employee row).
        """
        self._sessions.check(ctx)
        if not ctx.is_owner:
            return False, "Only store owners can add employees.", None
        if not ctx.store_id:
            return False, "Select a store before adding employees.", None

        name_n = (name or "").strip()
        email_n = (email or "").strip().lower()
        if not name_n:
            return False, "Employee name is required.", None
        if email_n and not validate_email(email_n):
            return False, "Invalid email format.", None
        if phone and not validate_phone_number(phone):
            return False, "Phone number must have 10 digits.", None
        if not PWD_RE.match(password or ""):
            return False, "Password must be at least 8 characters, include 1 uppercase and 1 special character.", None
        if role not in EMPLOYEE_ROLES:
            return False, f"Role must be one of {', '.join(EMPLOYEE_ROLES)}.", None

        try:
            employee = self._codes.reserve(
                ctx.store_id,
                name_n,
                {
                    "user_id": ctx.user_id,
                    "email": email_n,
                    "phone": phone,
                    "role": role,
                    "password_hash": hash_password(password),
                    "is_active": True,
                    "is_synced": False,
                },
            )
        except (NotFound, ValidationError) as exc:
            return False, str(exc), None
        log.info("Employee %s created in store %s", employee["employee_code"], ctx.store_id)
        return True, f"Employee created with ID {employee['employee_code']}.", employee

    def _find_store(self, store_name_or_code: str) -> Optional[Dict[str, Any]]:
        ident = store_name_or_code.strip()
        return self._store.stores.query(
            predicate=lambda s: (s.get("store_code") or "").upper() == ident.upper()
            or (s.get("name") or "").strip().lower() == ident.lower()
        ).first()

    def login_employee(
        self,
        store_name_or_code: str,
        employee_code: str,
        password: str,
    ) -> Tuple[bool, Optional[SessionContext], str]:
        """Authenticate an employee against the local mirror and open a session.

        The session's ``user_id`` is the store owner, so everything the
        employee writes belongs to the owner's data set.
        """
        if not (store_name_or_code or "").strip() or not (employee_code or "").strip() or not password:
            return False, None, "Store, employee ID and password are required."

        store_row = self._find_store(store_name_or_code)
        if store_row is None:
            return False, None, "Store not found."

        code = employee_code.strip().upper()
        employee = self._store.employees.query(
            "store_id",
            store_row["id"],
            predicate=lambda e: (e.get("employee_code") or "").upper() == code,
        ).first()
        if employee is None:
            return False, None, "Employee not found."
        if not employee.get("is_active"):
            return False, None, "Employee account is disabled."
        if not verify_password(password, employee.get("password_hash") or ""):
            return False, None, "Invalid password."

        ctx = self._sessions.save_session(
            store_row["user_id"],
            employee.get("email") or "",
            "employee",
            store_id=store_row["id"],
            employee_code=code,
        )
        return True, ctx, "OK"

    # ------------------------------------------------------------------
    # Offline owner login
    def set_offline_login_enabled(self, enabled: bool) -> None:
        self.offline_enabled = enabled
        if not enabled:
            with self._store.transaction() as session:
                session.execute(delete(OfflineCredential))
        log.info("Offline login %s", "enabled" if enabled else "disabled")

    def persist_offline_credential(
        self,
        email: str,
        password: str,
        *,
        user_id: Optional[str] = None,
        role: str = "admin",
        store_id: Optional[str] = None,
    ) -> bool:
        """Remember an owner's credential after a successful online login."""
        if not self.offline_enabled:
            return False
        email_n = (email or "").strip().lower()
        with self._store.transaction() as session:
            cred = session.get(OfflineCredential, email_n)
            if cred is None:
                cred = OfflineCredential(email=email_n)
                session.add(cred)
            cred.user_id = user_id
            cred.password_hash = hash_password(password)
            cred.role = role
            cred.store_id = store_id
            cred.updated_at = utcnow()
        return True

    def attempt_offline_login(self, email: str, password: str) -> Tuple[bool, Optional[SessionContext], str]:
        if not self.offline_enabled:
            return False, None, "Offline login is disabled."
        email_n = (email or "").strip().lower()
        with self._store.transaction() as session:
            cred = session.get(OfflineCredential, email_n)
            if cred is None:
                return False, None, "No offline credential stored for this account."
            user_id, pwd_hash, role, store_id = cred.user_id, cred.password_hash, cred.role, cred.store_id
        if not verify_password(password, pwd_hash):
            return False, None, "Invalid password."
        ctx = self._sessions.save_session(user_id or email_n, email_n, role, store_id=store_id)
        return True, ctx, "OK"

    def logout(self) -> None:
        self._sessions.clear_session()
