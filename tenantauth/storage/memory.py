from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    REVOKE_REUSE,
    Account,
    AuditEvent,
    Institution,
    PasswordRecord,
    PasswordResetChallenge,
    RotationOutcome,
    Session,
    utcnow,
)

_PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "date_of_birth",
    "gender",
    "bio",
)


def _copy(record):
    """Detached copy so callers never mutate stored state outside the lock."""
    return replace(record) if record is not None else None


class MemoryStore:
    """Thread-safe in-process store persisted to a JSON snapshot.

    Every public method takes ``_data_lock`` for its whole body, so each call
    is one atomic step with respect to concurrent requests in this process.
    """

    def __init__(self, fs_root: str = "/tmp/tenantauth") -> None:
        self.logger = get_logger(__name__)
        self.institutions: Dict[str, Institution] = {}
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.challenges: Dict[str, PasswordResetChallenge] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can re-enter from public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- institutions -------------------------------------------------

    def create_institution(
        self,
        name: str,
        subdomain: str,
        *,
        custom_domain: Optional[str] = None,
        is_active: bool = True,
        settings: Optional[Dict] = None,
    ) -> Institution:
        subdomain = subdomain.strip().lower()
        custom_domain = custom_domain.strip().lower() if custom_domain else None
        with self._data_lock:
            for existing in self.institutions.values():
                if existing.subdomain == subdomain:
                    raise ConstraintViolation(
                        "subdomain already exists", {"field": "subdomain"}
                    )
                if custom_domain and existing.custom_domain == custom_domain:
                    raise ConstraintViolation(
                        "custom domain already exists", {"field": "custom_domain"}
                    )
            institution = Institution(
                id=str(uuid.uuid4()),
                name=name,
                subdomain=subdomain,
                custom_domain=custom_domain,
                is_active=is_active,
                settings=dict(settings or {}),
            )
            self.institutions[institution.id] = institution
            self._persist_state()
            return replace(institution)

    def get_institution(self, institution_id: str) -> Optional[Institution]:
        with self._data_lock:
            return _copy(self.institutions.get(institution_id))

    def get_institution_by_subdomain(self, subdomain: str) -> Optional[Institution]:
        label = subdomain.lower()
        with self._data_lock:
            return _copy(
                next((i for i in self.institutions.values() if i.subdomain == label), None)
            )

    def get_institution_by_domain(self, domain: str) -> Optional[Institution]:
        host = domain.lower()
        with self._data_lock:
            return _copy(
                next((i for i in self.institutions.values() if i.custom_domain == host), None)
            )

    def set_institution_active(self, institution_id: str, is_active: bool) -> None:
        with self._data_lock:
            institution = self.institutions.get(institution_id)
            if not institution:
                return
            institution.is_active = is_active
            self._persist_state()

    # -- accounts -----------------------------------------------------

    def create_account(
        self,
        institution_id: Optional[str],
        username: str,
        *,
        role: str = "student",
        email: Optional[str] = None,
        phone: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
        force_password_change: bool = True,
        profile_completed: bool = False,
    ) -> Account:
        email = email.strip().lower() if email else None
        with self._data_lock:
            if institution_id is not None and institution_id not in self.institutions:
                raise ConstraintViolation(
                    "institution does not exist", {"institution_id": institution_id}
                )
            self._check_unique(institution_id, None, username=username, email=email, phone=phone)
            account = Account(
                id=str(uuid.uuid4()),
                institution_id=institution_id,
                username=username,
                role=role,
                email=email,
                phone=phone,
                first_name=first_name,
                last_name=last_name,
                permissions=list(permissions or []),
                is_active=is_active,
                force_password_change=force_password_change,
                profile_completed=profile_completed,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def _check_unique(
        self,
        institution_id: Optional[str],
        account_id: Optional[str],
        **values: Optional[str],
    ) -> None:
        for field_name, value in values.items():
            if not value:
                continue
            for other in self.accounts.values():
                if other.id == account_id or other.institution_id != institution_id:
                    continue
                current = getattr(other, field_name)
                if current is None:
                    continue
                if field_name == "email":
                    clash = current.lower() == value.lower()
                else:
                    clash = current == value
                if clash:
                    raise ConstraintViolation(
                        f"{field_name} already exists", {"field": field_name}
                    )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return _copy(self.accounts.get(account_id))

    def find_account(
        self, institution_id: Optional[str], identifier: str
    ) -> Optional[Account]:
        """Look up by username, email or phone within one institution."""
        ident = identifier.strip()
        lowered = ident.lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.institution_id != institution_id:
                    continue
                if (
                    account.username == ident
                    or (account.email is not None and account.email == lowered)
                    or (account.phone is not None and account.phone == ident)
                ):
                    return replace(account)
            return None

    def set_account_active(self, account_id: str, is_active: bool) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.is_active = is_active
            account.updated_at = utcnow()
            self._persist_state()

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = PasswordRecord(
                account_id=account_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(account_id)
            if not record:
                return None
            return record.password_hash, record.password_algo

    def record_failed_login(
        self, account_id: str, threshold: int, lockout_seconds: int
    ) -> Optional[Account]:
        """Increment the failure counter; lock and reset it at the threshold."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            now = utcnow()
            account.failed_attempt_count += 1
            if account.failed_attempt_count >= threshold:
                account.locked_until = now + timedelta(seconds=lockout_seconds)
                account.failed_attempt_count = 0
            account.updated_at = now
            self._persist_state()
            return replace(account)

    def record_login_success(
        self, account_id: str, ip_addr: Optional[str] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            now = utcnow()
            account.failed_attempt_count = 0
            account.locked_until = None
            account.last_login_at = now
            account.last_login_ip = ip_addr
            account.updated_at = now
            self._persist_state()
            return replace(account)

    def change_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        keep_family_id: Optional[str] = None,
        reason: str = "password_change",
    ) -> Optional[Account]:
        """Store a new hash, clear force-change, revoke other sessions."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            now = utcnow()
            self.credentials[account_id] = PasswordRecord(
                account_id=account_id,
                password_hash=password_hash,
                password_algo=password_algo,
                updated_at=now,
            )
            account.force_password_change = False
            account.updated_at = now
            self._revoke_where(
                lambda s: s.account_id == account_id and s.family_id != keep_family_id,
                reason,
                now,
            )
            self._persist_state()
            return replace(account)

    def update_profile(self, account_id: str, **fields: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            changes = {k: v for k, v in fields.items() if k in _PROFILE_FIELDS}
            if changes.get("email"):
                changes["email"] = changes["email"].strip().lower()
            self._check_unique(
                account.institution_id,
                account.id,
                email=changes.get("email"),
                phone=changes.get("phone"),
            )
            for key, value in changes.items():
                setattr(account, key, value)
            if fields.get("profile_completed"):
                account.profile_completed = True
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    # -- sessions -----------------------------------------------------

    def _revoke_where(self, predicate, reason: str, now: datetime) -> int:
        count = 0
        for sess in self.sessions.values():
            if not sess.revoked and predicate(sess):
                sess.revoked = True
                sess.revoked_at = now
                sess.revoke_reason = reason
                count += 1
        return count

    def create_session(
        self,
        session: Session,
        *,
        revoke_existing: bool = False,
        revoke_reason: str = "new_device",
    ) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            if revoke_existing:
                self._revoke_where(
                    lambda s: s.account_id == session.account_id,
                    revoke_reason,
                    session.issued_at,
                )
            self.sessions[session.id] = session
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return _copy(self.sessions.get(session_id))

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            return _copy(
                next((s for s in self.sessions.values() if s.token_hash == token_hash), None)
            )

    def rotate_session(
        self, token_hash: str, replacement: Session, *, reason: str = "rotated"
    ) -> RotationOutcome:
        """Revoke the session matching ``token_hash`` and insert its successor.

        The lookup, revocation and insert happen under one lock acquisition,
        so of two callers presenting the same token only one sees ``rotated``.
        """
        with self._data_lock:
            current = next(
                (s for s in self.sessions.values() if s.token_hash == token_hash), None
            )
            if current is None:
                return RotationOutcome(status="not_found")
            if current.revoked:
                status = "reused" if current.replaced_by else "revoked"
                return RotationOutcome(status=status, previous=replace(current))
            now = replacement.issued_at
            if current.expires_at <= now:
                return RotationOutcome(status="expired", previous=replace(current))
            current.revoked = True
            current.revoked_at = now
            current.revoke_reason = reason
            current.replaced_by = replacement.id
            replacement.family_id = current.family_id
            self.sessions[replacement.id] = replacement
            self._persist_state()
            return RotationOutcome(
                status="rotated", previous=replace(current), session=replace(replacement)
            )

    def revoke_session_family(
        self, family_id: str, reason: str = REVOKE_REUSE
    ) -> int:
        with self._data_lock:
            count = self._revoke_where(
                lambda s: s.family_id == family_id, reason, utcnow()
            )
            if count:
                self._persist_state()
            return count

    def revoke_account_sessions(
        self,
        account_id: str,
        reason: str = "logout_all",
        *,
        except_family_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = self._revoke_where(
                lambda s: s.account_id == account_id
                and (except_family_id is None or s.family_id != except_family_id),
                reason,
                utcnow(),
            )
            if count:
                self._persist_state()
            return count

    def list_account_sessions(
        self, account_id: str, *, active_only: bool = True
    ) -> List[Session]:
        now = utcnow()
        with self._data_lock:
            results = [
                replace(s)
                for s in self.sessions.values()
                if s.account_id == account_id and (not active_only or s.is_active(now))
            ]
            return sorted(results, key=lambda s: s.issued_at, reverse=True)

    # -- password reset challenges -------------------------------------

    def upsert_reset_challenge(
        self, challenge: PasswordResetChallenge
    ) -> PasswordResetChallenge:
        with self._data_lock:
            if challenge.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": challenge.account_id}
                )
            self.challenges[challenge.account_id] = challenge
            self._persist_state()
            return replace(challenge)

    def get_reset_challenge(self, account_id: str) -> Optional[PasswordResetChallenge]:
        with self._data_lock:
            return _copy(self.challenges.get(account_id))

    def register_reset_attempt(
        self, account_id: str
    ) -> Optional[PasswordResetChallenge]:
        """Count one verification attempt and return the updated challenge."""
        with self._data_lock:
            challenge = self.challenges.get(account_id)
            if not challenge:
                return None
            challenge.attempt_count += 1
            self._persist_state()
            return replace(challenge)

    def delete_reset_challenge(self, account_id: str) -> None:
        with self._data_lock:
            if self.challenges.pop(account_id, None) is not None:
                self._persist_state()

    def apply_password_reset(
        self, account_id: str, otp_hash: str, password_hash: str, password_algo: str
    ) -> Optional[Account]:
        """Consume the challenge matching ``otp_hash`` and set the new password.

        Clears lock state and revokes all sessions. Returns None when the
        challenge is already gone, so a code is spent at most once.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            challenge = self.challenges.get(account_id)
            if not account or challenge is None or challenge.otp_hash != otp_hash:
                return None
            del self.challenges[account_id]
            now = utcnow()
            self.credentials[account_id] = PasswordRecord(
                account_id=account_id,
                password_hash=password_hash,
                password_algo=password_algo,
                updated_at=now,
            )
            account.force_password_change = False
            account.failed_attempt_count = 0
            account.locked_until = None
            account.updated_at = now
            self._revoke_where(
                lambda s: s.account_id == account_id, "password_reset", now
            )
            self._persist_state()
            return replace(account)

    # -- audit ----------------------------------------------------------

    def record_audit_event(
        self,
        event: str,
        *,
        severity: str = "info",
        institution_id: Optional[str] = None,
        account_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        detail: Optional[Dict] = None,
    ) -> AuditEvent:
        with self._data_lock:
            entry = AuditEvent(
                id=str(uuid.uuid4()),
                event=event,
                severity=severity,
                institution_id=institution_id,
                account_id=account_id,
                ip_addr=ip_addr,
                detail=dict(detail or {}),
            )
            self.audit_events.append(entry)
            self._persist_state()
            return entry

    def list_audit_events(
        self, *, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            results = [
                e
                for e in self.audit_events
                if account_id is None or e.account_id == account_id
            ]
            return list(reversed(results))[:limit]

    # -- persistence ------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        state = {
            "institutions": [
                self._serialize_institution(i) for i in self.institutions.values()
            ],
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": rec.account_id,
                    "password_hash": rec.password_hash,
                    "password_algo": rec.password_algo,
                    "updated_at": self._serialize_datetime(rec.updated_at),
                }
                for rec in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "challenges": [
                self._serialize_challenge(c) for c in self.challenges.values()
            ],
            "audit_events": [self._serialize_audit(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.institutions = {
            i["id"]: self._deserialize_institution(i)
            for i in data.get("institutions", [])
        }
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["account_id"]: PasswordRecord(
                account_id=entry["account_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", "argon2id"),
                updated_at=self._deserialize_datetime(entry.get("updated_at"))
                or utcnow(),
            )
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.challenges = {
            c["account_id"]: self._deserialize_challenge(c)
            for c in data.get("challenges", [])
        }
        self.audit_events = [
            self._deserialize_audit(e) for e in data.get("audit_events", [])
        ]
        return True

    def _serialize_institution(self, institution: Institution) -> dict:
        return {
            "id": institution.id,
            "name": institution.name,
            "subdomain": institution.subdomain,
            "custom_domain": institution.custom_domain,
            "is_active": institution.is_active,
            "settings": institution.settings,
            "created_at": self._serialize_datetime(institution.created_at),
        }

    def _deserialize_institution(self, data: dict) -> Institution:
        return Institution(
            id=data["id"],
            name=data["name"],
            subdomain=data["subdomain"],
            custom_domain=data.get("custom_domain"),
            is_active=data.get("is_active", True),
            settings=data.get("settings") or {},
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "institution_id": account.institution_id,
            "username": account.username,
            "role": account.role,
            "email": account.email,
            "phone": account.phone,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "date_of_birth": account.date_of_birth,
            "gender": account.gender,
            "bio": account.bio,
            "permissions": account.permissions,
            "is_active": account.is_active,
            "failed_attempt_count": account.failed_attempt_count,
            "locked_until": self._serialize_datetime(account.locked_until),
            "force_password_change": account.force_password_change,
            "profile_completed": account.profile_completed,
            "two_factor_enabled": account.two_factor_enabled,
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "last_login_ip": account.last_login_ip,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "deleted_at": self._serialize_datetime(account.deleted_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            institution_id=data.get("institution_id"),
            username=data["username"],
            role=data.get("role", "student"),
            email=data.get("email"),
            phone=data.get("phone"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            date_of_birth=data.get("date_of_birth"),
            gender=data.get("gender"),
            bio=data.get("bio"),
            permissions=list(data.get("permissions") or []),
            is_active=data.get("is_active", True),
            failed_attempt_count=int(data.get("failed_attempt_count", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            force_password_change=data.get("force_password_change", True),
            profile_completed=data.get("profile_completed", False),
            two_factor_enabled=data.get("two_factor_enabled", False),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "institution_id": session.institution_id,
            "family_id": session.family_id,
            "token_hash": session.token_hash,
            "issued_at": self._serialize_datetime(session.issued_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "revoked": session.revoked,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoke_reason": session.revoke_reason,
            "replaced_by": session.replaced_by,
            "device_name": session.device_name,
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            institution_id=data.get("institution_id"),
            family_id=data.get("family_id") or data["id"],
            token_hash=data["token_hash"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=data.get("revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoke_reason=data.get("revoke_reason"),
            replaced_by=data.get("replaced_by"),
            device_name=data.get("device_name"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_challenge(self, challenge: PasswordResetChallenge) -> dict:
        return {
            "account_id": challenge.account_id,
            "otp_hash": challenge.otp_hash,
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "attempt_count": challenge.attempt_count,
            "max_attempts": challenge.max_attempts,
            "channel": challenge.channel,
            "created_at": self._serialize_datetime(challenge.created_at),
        }

    def _deserialize_challenge(self, data: dict) -> PasswordResetChallenge:
        return PasswordResetChallenge(
            account_id=data["account_id"],
            otp_hash=data["otp_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempt_count=int(data.get("attempt_count", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            channel=data.get("channel", "Email"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_audit(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "event": event.event,
            "severity": event.severity,
            "institution_id": event.institution_id,
            "account_id": event.account_id,
            "ip_addr": event.ip_addr,
            "detail": event.detail,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            event=data["event"],
            severity=data.get("severity", "info"),
            institution_id=data.get("institution_id"),
            account_id=data.get("account_id"),
            ip_addr=data.get("ip_addr"),
            detail=data.get("detail") or {},
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
