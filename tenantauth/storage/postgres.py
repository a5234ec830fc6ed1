from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    REVOKE_REUSE,
    Account,
    AuditEvent,
    Institution,
    PasswordResetChallenge,
    RotationOutcome,
    Session,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS institution (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        subdomain TEXT NOT NULL UNIQUE,
        custom_domain TEXT UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        settings JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        institution_id TEXT REFERENCES institution(id) ON DELETE CASCADE,
        username TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'student',
        email TEXT,
        phone TEXT,
        first_name TEXT,
        last_name TEXT,
        date_of_birth TEXT,
        gender TEXT CHECK (gender IN ('male', 'female', 'other')),
        bio TEXT,
        permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_attempt_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        force_password_change BOOLEAN NOT NULL DEFAULT TRUE,
        profile_completed BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_username_uniq
        ON account (coalesce(institution_id, ''), username)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_email_uniq
        ON account (coalesce(institution_id, ''), lower(email)) WHERE email IS NOT NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_phone_uniq
        ON account (coalesce(institution_id, ''), phone) WHERE phone IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        institution_id TEXT,
        family_id TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT,
        replaced_by TEXT,
        device_name TEXT,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_family_idx ON auth_session (family_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_challenge (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        otp_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        channel TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        event TEXT NOT NULL,
        severity TEXT NOT NULL,
        institution_id TEXT,
        account_id TEXT,
        ip_addr TEXT,
        detail JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_PROFILE_COLUMNS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "date_of_birth",
    "gender",
    "bio",
)


class PostgresStore:
    """Postgres-backed store; each public method runs in one transaction."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _institution_from_row(row: Dict[str, Any]) -> Institution:
        return Institution(
            id=row["id"],
            name=row["name"],
            subdomain=row["subdomain"],
            custom_domain=row.get("custom_domain"),
            is_active=row["is_active"],
            settings=row.get("settings") or {},
            created_at=row["created_at"],
        )

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=row["id"],
            institution_id=row.get("institution_id"),
            username=row["username"],
            role=row["role"],
            email=row.get("email"),
            phone=row.get("phone"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            date_of_birth=row.get("date_of_birth"),
            gender=row.get("gender"),
            bio=row.get("bio"),
            permissions=list(row.get("permissions") or []),
            is_active=row["is_active"],
            failed_attempt_count=row.get("failed_attempt_count") or 0,
            locked_until=row.get("locked_until"),
            force_password_change=row["force_password_change"],
            profile_completed=row["profile_completed"],
            two_factor_enabled=row.get("two_factor_enabled", False),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            account_id=row["account_id"],
            institution_id=row.get("institution_id"),
            family_id=row["family_id"],
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=row["revoked"],
            revoked_at=row.get("revoked_at"),
            revoke_reason=row.get("revoke_reason"),
            replaced_by=row.get("replaced_by"),
            device_name=row.get("device_name"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> PasswordResetChallenge:
        return PasswordResetChallenge(
            account_id=row["account_id"],
            otp_hash=row["otp_hash"],
            expires_at=row["expires_at"],
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            channel=row["channel"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            event=row["event"],
            severity=row["severity"],
            institution_id=row.get("institution_id"),
            account_id=row.get("account_id"),
            ip_addr=row.get("ip_addr"),
            detail=row.get("detail") or {},
            created_at=row["created_at"],
        )

    # -- institutions -----------------------------------------------------

    def create_institution(
        self,
        name: str,
        subdomain: str,
        *,
        custom_domain: Optional[str] = None,
        is_active: bool = True,
        settings: Optional[Dict] = None,
    ) -> Institution:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO institution (id, name, subdomain, custom_domain, is_active, settings)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        name,
                        subdomain.strip().lower(),
                        custom_domain.strip().lower() if custom_domain else None,
                        is_active,
                        json.dumps(settings or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "institution domain already exists", {"field": "subdomain"}
            )
        return self._institution_from_row(row)

    def get_institution(self, institution_id: str) -> Optional[Institution]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM institution WHERE id = %s", (institution_id,)
            ).fetchone()
        return self._institution_from_row(row) if row else None

    def get_institution_by_subdomain(self, subdomain: str) -> Optional[Institution]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM institution WHERE subdomain = %s", (subdomain.lower(),)
            ).fetchone()
        return self._institution_from_row(row) if row else None

    def get_institution_by_domain(self, domain: str) -> Optional[Institution]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM institution WHERE custom_domain = %s", (domain.lower(),)
            ).fetchone()
        return self._institution_from_row(row) if row else None

    def set_institution_active(self, institution_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE institution SET is_active = %s WHERE id = %s",
                (is_active, institution_id),
            )

    # -- accounts ---------------------------------------------------------

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, institution_id, username, role, email, phone, first_name,
                        last_name, permissions, is_active, force_password_change, profile_completed
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        institution_id,
                        username,
                        role,
                        email.strip().lower() if email else None,
                        phone,
                        first_name,
                        last_name,
                        json.dumps(list(permissions or [])),
                        is_active,
                        force_password_change,
                        profile_completed,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "account identifier already exists", {"field": "username"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "institution does not exist", {"institution_id": institution_id}
            )
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def find_account(
        self, institution_id: Optional[str], identifier: str
    ) -> Optional[Account]:
        ident = identifier.strip()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM account
                WHERE institution_id IS NOT DISTINCT FROM %s
                  AND (username = %s OR lower(email) = lower(%s) OR phone = %s)
                ORDER BY created_at
                LIMIT 1
                """,
                (institution_id, ident, ident, ident),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_active(self, account_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET is_active = %s, updated_at = now() WHERE id = %s",
                (is_active, account_id),
            )

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def record_failed_login(
        self, account_id: str, threshold: int, lockout_seconds: int
    ) -> Optional[Account]:
        # SET expressions read the pre-update row, so both CASEs agree
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET
                    failed_attempt_count = CASE
                        WHEN failed_attempt_count + 1 >= %(threshold)s THEN 0
                        ELSE failed_attempt_count + 1
                    END,
                    locked_until = CASE
                        WHEN failed_attempt_count + 1 >= %(threshold)s
                            THEN now() + make_interval(secs => %(seconds)s)
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %(account_id)s
                RETURNING *
                """,
                {
                    "threshold": threshold,
                    "seconds": lockout_seconds,
                    "account_id": account_id,
                },
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login_success(
        self, account_id: str, ip_addr: Optional[str] = None
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET
                    failed_attempt_count = 0,
                    locked_until = NULL,
                    last_login_at = now(),
                    last_login_ip = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (ip_addr, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def change_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        keep_family_id: Optional[str] = None,
        reason: str = "password_change",
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET force_password_change = FALSE, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                INSERT INTO account_credential (account_id, password_hash, password_algo)
                VALUES (%s, %s, %s)
                ON CONFLICT (account_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (account_id, password_hash, password_algo),
            )
            conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = now(), revoke_reason = %s
                WHERE account_id = %s AND revoked = FALSE
                  AND family_id IS DISTINCT FROM %s
                """,
                (reason, account_id, keep_family_id),
            )
        return self._account_from_row(row)

    def update_profile(self, account_id: str, **fields: Any) -> Optional[Account]:
        changes = {k: v for k, v in fields.items() if k in _PROFILE_COLUMNS}
        if changes.get("email"):
            changes["email"] = changes["email"].strip().lower()
        assignments = [f"{column} = %({column})s" for column in changes]
        if fields.get("profile_completed"):
            assignments.append("profile_completed = TRUE")
        assignments.append("updated_at = now()")
        params = {**changes, "account_id": account_id}
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {', '.join(assignments)} WHERE id = %(account_id)s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "contact detail already in use", {"field": "email_or_phone"}
            )
        return self._account_from_row(row) if row else None

    # -- sessions ---------------------------------------------------------

    @staticmethod
    def _insert_session(conn, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO auth_session (
                id, account_id, institution_id, family_id, token_hash, issued_at,
                expires_at, device_name, user_agent, ip_addr
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.account_id,
                session.institution_id,
                session.family_id,
                session.token_hash,
                session.issued_at,
                session.expires_at,
                session.device_name,
                session.user_agent,
                session.ip_addr,
            ),
        )

    def create_session(
        self,
        session: Session,
        *,
        revoke_existing: bool = False,
        revoke_reason: str = "new_device",
    ) -> Session:
        try:
            with self._connect() as conn:
                if revoke_existing:
                    conn.execute(
                        """
                        UPDATE auth_session SET revoked = TRUE, revoked_at = %s, revoke_reason = %s
                        WHERE account_id = %s AND revoked = FALSE
                        """,
                        (session.issued_at, revoke_reason, session.account_id),
                    )
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session account missing", {"account_id": session.account_id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self, token_hash: str, replacement: Session, *, reason: str = "rotated"
    ) -> RotationOutcome:
        """Revoke-and-replace under a row lock on the presented session."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s FOR UPDATE",
                (token_hash,),
            ).fetchone()
            if not row:
                return RotationOutcome(status="not_found")
            current = self._session_from_row(row)
            if current.revoked:
                status = "reused" if current.replaced_by else "revoked"
                return RotationOutcome(status=status, previous=current)
            if current.expires_at <= replacement.issued_at:
                return RotationOutcome(status="expired", previous=current)
            replacement.family_id = current.family_id
            revoked_row = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, revoked_at = %s, revoke_reason = %s, replaced_by = %s
                WHERE id = %s AND revoked = FALSE
                RETURNING *
                """,
                (replacement.issued_at, reason, replacement.id, current.id),
            ).fetchone()
            if not revoked_row:
                return RotationOutcome(status="reused", previous=current)
            self._insert_session(conn, replacement)
        return RotationOutcome(
            status="rotated",
            previous=self._session_from_row(revoked_row),
            session=replacement,
        )

    def revoke_session_family(
        self, family_id: str, reason: str = REVOKE_REUSE
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = now(), revoke_reason = %s
                WHERE family_id = %s AND revoked = FALSE
                """,
                (reason, family_id),
            )
            return result.rowcount

    def revoke_account_sessions(
        self,
        account_id: str,
        reason: str = "logout_all",
        *,
        except_family_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked = TRUE, revoked_at = now(), revoke_reason = %s
                WHERE account_id = %s AND revoked = FALSE
                  AND family_id IS DISTINCT FROM %s
                """,
                (reason, account_id, except_family_id),
            )
            return result.rowcount

    def list_account_sessions(
        self, account_id: str, *, active_only: bool = True
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE account_id = %s"
        if active_only:
            query += " AND revoked = FALSE AND expires_at > now()"
        query += " ORDER BY issued_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (account_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    # -- password reset challenges -----------------------------------------

    def upsert_reset_challenge(
        self, challenge: PasswordResetChallenge
    ) -> PasswordResetChallenge:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset_challenge (
                        account_id, otp_hash, expires_at, attempt_count, max_attempts, channel, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET otp_hash = EXCLUDED.otp_hash,
                        expires_at = EXCLUDED.expires_at,
                        attempt_count = EXCLUDED.attempt_count,
                        max_attempts = EXCLUDED.max_attempts,
                        channel = EXCLUDED.channel,
                        created_at = EXCLUDED.created_at
                    RETURNING *
                    """,
                    (
                        challenge.account_id,
                        challenge.otp_hash,
                        challenge.expires_at,
                        challenge.attempt_count,
                        challenge.max_attempts,
                        challenge.channel,
                        challenge.created_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": challenge.account_id}
            )
        return self._challenge_from_row(row)

    def get_reset_challenge(self, account_id: str) -> Optional[PasswordResetChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_challenge WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def register_reset_attempt(
        self, account_id: str
    ) -> Optional[PasswordResetChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_challenge SET attempt_count = attempt_count + 1
                WHERE account_id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def delete_reset_challenge(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM password_reset_challenge WHERE account_id = %s",
                (account_id,),
            )

    def apply_password_reset(
        self, account_id: str, otp_hash: str, password_hash: str, password_algo: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            consumed = conn.execute(
                """
                DELETE FROM password_reset_challenge
                WHERE account_id = %s AND otp_hash = %s
                RETURNING account_id
                """,
                (account_id, otp_hash),
            ).fetchone()
            if not consumed:
                return None
            row = conn.execute(
                """
                UPDATE account SET
                    force_password_change = FALSE,
                    failed_attempt_count = 0,
                    locked_until = NULL,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                INSERT INTO account_credential (account_id, password_hash, password_algo)
                VALUES (%s, %s, %s)
                ON CONFLICT (account_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (account_id, password_hash, password_algo),
            )
            conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, revoked_at = now(), revoke_reason = 'password_reset'
                WHERE account_id = %s AND revoked = FALSE
                """,
                (account_id,),
            )
        return self._account_from_row(row)

    # -- audit --------------------------------------------------------------

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_event (id, event, severity, institution_id, account_id, ip_addr, detail)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    event,
                    severity,
                    institution_id,
                    account_id,
                    ip_addr,
                    json.dumps(detail or {}),
                ),
            ).fetchone()
        return self._audit_from_row(row)

    def list_audit_events(
        self, *, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        query = "SELECT * FROM audit_event"
        params: list[Any] = []
        if account_id is not None:
            query += " WHERE account_id = %s"
            params.append(account_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._audit_from_row(row) for row in rows]
