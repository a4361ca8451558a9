from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from playerdash.logging import get_logger
from playerdash.storage.common import SecretCipher, safe_row_value
from playerdash.storage.errors import ConstraintViolation
from playerdash.storage.models import (
    ActiveState,
    OneShotToken,
    PendingState,
    Principal,
    RefreshCredential,
    RevocationEntry,
    RevocationReason,
    Role,
    TokenIntent,
    TotpSecrets,
    TwoFactor,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        tenant_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        activated_at TIMESTAMPTZ,
        two_factor TEXT NOT NULL DEFAULT 'none',
        invitation_token TEXT UNIQUE,
        invitation_issued_at TIMESTAMPTZ,
        invitation_expires_at TIMESTAMPTZ,
        last_reminder_at TIMESTAMPTZ,
        failed_logins INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        reset_token TEXT UNIQUE,
        reset_issued_at TIMESTAMPTZ,
        reset_expires_at TIMESTAMPTZ,
        reset_requested_at TIMESTAMPTZ,
        token_generation INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS principal_tenant_idx ON principal (tenant_id)",
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_totp (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        committed_secret TEXT,
        pending_secret TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_credential (
        token TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_credential_principal_idx ON refresh_credential (principal_id)",
    "CREATE INDEX IF NOT EXISTS refresh_credential_expires_idx ON refresh_credential (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS revocation_entry (
        jti TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL,
        principal_id TEXT NOT NULL,
        token_hash TEXT,
        reason TEXT NOT NULL,
        revoked_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS revocation_entry_expires_idx ON revocation_entry (expires_at)",
)

_REQUIRED_TABLES = (
    "principal",
    "principal_credential",
    "principal_totp",
    "refresh_credential",
    "revocation_entry",
)


class PostgresStore:
    """Postgres-backed identity, refresh and revocation store.

    Atomicity relies on single conditional statements (``WHERE revoked_at
    IS NULL``, ``failed_logins = failed_logins + 1``) or row locks taken in
    one transaction; no application-level locking is needed across
    instances.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, totp_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(totp_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # row mapping ----------------------------------------------------------

    @staticmethod
    def _one_shot(row: dict, prefix: str, intent: TokenIntent) -> Optional[OneShotToken]:
        token = row.get(f"{prefix}_token")
        if not token:
            return None
        return OneShotToken(
            token=token,
            intent=intent,
            issued_at=row[f"{prefix}_issued_at"],
            expires_at=row[f"{prefix}_expires_at"],
        )

    def _row_to_principal(self, row: dict) -> Principal:
        if row["status"] == "active":
            state: Any = ActiveState(
                activated_at=row["activated_at"],
                two_factor=TwoFactor(safe_row_value(row, "two_factor", "none")),
            )
        else:
            state = PendingState(
                invitation=self._one_shot(row, "invitation", TokenIntent.INVITE),
                last_reminder_at=row.get("last_reminder_at"),
            )
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            role=Role(row["role"]),
            tenant_id=row.get("tenant_id"),
            state=state,
            failed_logins=safe_row_value(row, "failed_logins", 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            reset=self._one_shot(row, "reset", TokenIntent.RESET),
            reset_requested_at=row.get("reset_requested_at"),
            token_generation=safe_row_value(row, "token_generation", 0),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_refresh(row: dict) -> RefreshCredential:
        return RefreshCredential(
            token=row["token"],
            principal_id=str(row["principal_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by=row.get("replaced_by"),
        )

    @staticmethod
    def _row_to_revocation(row: dict) -> RevocationEntry:
        return RevocationEntry(
            jti=row["jti"],
            expires_at=row["expires_at"],
            principal_id=str(row["principal_id"]),
            token_hash=row.get("token_hash"),
            reason=RevocationReason(row["reason"]),
            revoked_at=row["revoked_at"],
        )

    def _fetch_principal(self, where: str, params: tuple) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM principal WHERE {where}", params).fetchone()
        return self._row_to_principal(row) if row else None

    # principals -----------------------------------------------------------

    def create_principal(self, principal: Principal) -> Principal:
        state = principal.state
        invitation = state.invitation if isinstance(state, PendingState) else None
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (
                        id, email, role, tenant_id, status, activated_at, two_factor,
                        invitation_token, invitation_issued_at, invitation_expires_at,
                        last_reminder_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        principal.email,
                        principal.role.value,
                        principal.tenant_id,
                        principal.status,
                        state.activated_at if isinstance(state, ActiveState) else None,
                        principal.two_factor.value,
                        invitation.token if invitation else None,
                        invitation.issued_at if invitation else None,
                        invitation.expires_at if invitation else None,
                        state.last_reminder_at if isinstance(state, PendingState) else None,
                        principal.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        return self._fetch_principal("id = %s", (principal_id,))

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        return self._fetch_principal("email = %s", (email,))

    def get_principal_by_invitation_token(self, token: str) -> Optional[Principal]:
        return self._fetch_principal("invitation_token = %s AND status = 'pending'", (token,))

    def get_principal_by_reset_token(self, token: str) -> Optional[Principal]:
        return self._fetch_principal("reset_token = %s", (token,))

    def list_principals(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Principal]:
        with self._connect() as conn:
            if tenant_id is not None:
                rows = conn.execute(
                    "SELECT * FROM principal WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM principal ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_principal(row) for row in rows]

    def count_principals(self, tenant_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM principal WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def count_role(self, role: Role) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM principal WHERE role = %s", (role.value,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def set_invitation(
        self,
        principal_id: str,
        invitation: OneShotToken,
        reminded_at: datetime,
    ) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET invitation_token = %s, invitation_issued_at = %s,
                    invitation_expires_at = %s, last_reminder_at = %s
                WHERE id = %s AND status = 'pending'
                RETURNING *
                """,
                (
                    invitation.token,
                    invitation.issued_at,
                    invitation.expires_at,
                    reminded_at,
                    principal_id,
                ),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def activate_principal(
        self,
        principal_id: str,
        invitation_token: str,
        password_hash: str,
        password_algo: str,
        now: datetime,
        *,
        email: Optional[str] = None,
    ) -> Optional[Principal]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE principal
                    SET status = 'active', activated_at = %s, email = COALESCE(%s, email),
                        invitation_token = NULL, invitation_issued_at = NULL,
                        invitation_expires_at = NULL, failed_logins = 0, locked_until = NULL
                    WHERE id = %s AND status = 'pending' AND invitation_token = %s
                    RETURNING *
                    """,
                    (now, email, principal_id, invitation_token),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (principal_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (principal_id, password_hash, password_algo, now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_principal(row)

    def set_reset_token(self, principal_id: str, reset: OneShotToken) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET reset_token = %s, reset_issued_at = %s, reset_expires_at = %s,
                    reset_requested_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (reset.token, reset.issued_at, reset.expires_at, reset.issued_at, principal_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def consume_reset_token(
        self, token: str, password_hash: str, password_algo: str, now: datetime
    ) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET reset_token = NULL, reset_issued_at = NULL, reset_expires_at = NULL,
                    failed_logins = 0, locked_until = NULL
                WHERE reset_token = %s AND reset_expires_at > %s AND status = 'active'
                RETURNING *
                """,
                (token, now),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                UPDATE principal_credential
                SET password_hash = %s, password_algo = %s, updated_at = %s
                WHERE principal_id = %s
                """,
                (password_hash, password_algo, now, row["id"]),
            )
        return self._row_to_principal(row)

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE principal_credential
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE principal_id = %s
                """,
                (password_hash, password_algo, principal_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "active principal not found for credentials",
                    {"principal_id": principal_id},
                )

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def record_login_failure(
        self,
        principal_id: str,
        now: datetime,
        *,
        lock_threshold: int,
        lockout: timedelta,
    ) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET failed_logins = failed_logins + 1,
                    locked_until = CASE
                        WHEN failed_logins + 1 >= %s
                             AND (locked_until IS NULL OR locked_until <= %s)
                        THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING *
                """,
                (lock_threshold, now, now + lockout, principal_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def clear_expired_lockout(self, principal_id: str, now: datetime) -> Optional[Principal]:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE principal SET locked_until = NULL, failed_logins = 0
                WHERE id = %s AND locked_until IS NOT NULL AND locked_until <= %s
                """,
                (principal_id, now),
            )
            row = conn.execute("SELECT * FROM principal WHERE id = %s", (principal_id,)).fetchone()
        return self._row_to_principal(row) if row else None

    def record_login_success(self, principal_id: str, now: datetime) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET failed_logins = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, principal_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def bump_token_generation(self, principal_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal SET token_generation = token_generation + 1
                WHERE id = %s RETURNING token_generation
                """,
                (principal_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("principal not found", {"principal_id": principal_id})
        return int(row["token_generation"])

    def _guard_last_platform_admin(self, conn, principal_id: str) -> Optional[dict]:
        """Lock platform-admin rows and refuse to remove the last one."""
        row = conn.execute(
            "SELECT * FROM principal WHERE id = %s FOR UPDATE", (principal_id,)
        ).fetchone()
        if not row or row["role"] != Role.PLATFORM_ADMIN.value:
            return row
        admins = conn.execute(
            "SELECT id FROM principal WHERE role = %s FOR UPDATE",
            (Role.PLATFORM_ADMIN.value,),
        ).fetchall()
        if len([a for a in admins if str(a["id"]) != principal_id]) == 0:
            raise ConstraintViolation(
                "cannot remove the last platform-admin", {"principal_id": principal_id}
            )
        return row

    def update_principal_role(
        self, principal_id: str, role: Role, tenant_id: Optional[str]
    ) -> Optional[Principal]:
        with self._connect() as conn:
            if role is not Role.PLATFORM_ADMIN:
                self._guard_last_platform_admin(conn, principal_id)
            row = conn.execute(
                "UPDATE principal SET role = %s, tenant_id = %s WHERE id = %s RETURNING *",
                (role.value, tenant_id, principal_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def delete_principal(self, principal_id: str) -> bool:
        with self._connect() as conn:
            existing = self._guard_last_platform_admin(conn, principal_id)
            if not existing:
                return False
            result = conn.execute("DELETE FROM principal WHERE id = %s", (principal_id,))
            return result.rowcount > 0

    def list_reminder_candidates(
        self, now: datetime, reminder_interval: timedelta
    ) -> List[Principal]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM principal
                WHERE status = 'pending'
                  AND (invitation_expires_at IS NULL OR invitation_expires_at <= %s)
                  AND (last_reminder_at IS NULL OR last_reminder_at <= %s)
                """,
                (now, now - reminder_interval),
            ).fetchall()
        return [self._row_to_principal(row) for row in rows]

    # TOTP secrets ---------------------------------------------------------

    def set_pending_totp_secret(self, principal_id: str, secret: str) -> None:
        encrypted = self._cipher.encrypt(secret)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET two_factor = CASE WHEN two_factor = 'committed' THEN two_factor ELSE 'pending' END
                WHERE id = %s AND status = 'active'
                RETURNING id
                """,
                (principal_id,),
            ).fetchone()
            if not row:
                raise ConstraintViolation(
                    "active principal not found for totp", {"principal_id": principal_id}
                )
            conn.execute(
                """
                INSERT INTO principal_totp (principal_id, pending_secret)
                VALUES (%s, %s)
                ON CONFLICT (principal_id) DO UPDATE SET pending_secret = EXCLUDED.pending_secret
                """,
                (principal_id, encrypted),
            )

    def get_totp_secrets(self, principal_id: str) -> TotpSecrets:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal_totp WHERE principal_id = %s", (principal_id,)
            ).fetchone()
        if not row:
            return TotpSecrets(principal_id)
        return TotpSecrets(
            principal_id=principal_id,
            committed_secret=self._cipher.decrypt(row.get("committed_secret")),
            pending_secret=self._cipher.decrypt(row.get("pending_secret")),
        )

    def commit_pending_totp_secret(self, principal_id: str, expected_pending: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT pending_secret FROM principal_totp WHERE principal_id = %s FOR UPDATE",
                (principal_id,),
            ).fetchone()
            if not row or not row.get("pending_secret"):
                return False
            if self._cipher.decrypt(row["pending_secret"]) != expected_pending:
                return False
            conn.execute(
                """
                UPDATE principal_totp
                SET committed_secret = pending_secret, pending_secret = NULL
                WHERE principal_id = %s
                """,
                (principal_id,),
            )
            conn.execute(
                "UPDATE principal SET two_factor = 'committed' WHERE id = %s",
                (principal_id,),
            )
        return True

    def clear_totp_secrets(self, principal_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM principal_totp WHERE principal_id = %s", (principal_id,)
            )
            conn.execute(
                "UPDATE principal SET two_factor = 'none' WHERE id = %s", (principal_id,)
            )
            return result.rowcount > 0

    # refresh credentials --------------------------------------------------

    def create_refresh_credential(self, credential: RefreshCredential) -> RefreshCredential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_credential (token, principal_id, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        credential.token,
                        credential.principal_id,
                        credential.issued_at,
                        credential.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return credential

    def get_refresh_credential(self, token: str) -> Optional[RefreshCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_credential WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def rotate_refresh_credential(
        self, old_token: str, new_credential: RefreshCredential, now: datetime
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_credential
                SET revoked_at = %s, replaced_by = %s
                WHERE token = %s AND revoked_at IS NULL
                """,
                (now, new_credential.token, old_token),
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                """
                INSERT INTO refresh_credential (token, principal_id, issued_at, expires_at)
                VALUES (%s, %s, %s, %s)
                """,
                (
                    new_credential.token,
                    new_credential.principal_id,
                    new_credential.issued_at,
                    new_credential.expires_at,
                ),
            )
        return True

    def revoke_refresh_credential(self, token: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE refresh_credential SET revoked_at = %s WHERE token = %s AND revoked_at IS NULL",
                (now, token),
            )
            return result.rowcount > 0

    def revoke_principal_refresh_credentials(self, principal_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_credential SET revoked_at = %s
                WHERE principal_id = %s AND revoked_at IS NULL
                """,
                (now, principal_id),
            )
            return result.rowcount

    def purge_refresh_credentials(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_credential WHERE expires_at < %s OR revoked_at IS NOT NULL",
                (now,),
            )
            return result.rowcount

    # revocation index -----------------------------------------------------

    def add_revocation_entry(self, entry: RevocationEntry) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                INSERT INTO revocation_entry (jti, expires_at, principal_id, token_hash, reason, revoked_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                """,
                (
                    entry.jti,
                    entry.expires_at,
                    entry.principal_id,
                    entry.token_hash,
                    entry.reason.value,
                    entry.revoked_at,
                ),
            )
            return result.rowcount > 0

    def get_revocation_entry(self, jti: str) -> Optional[RevocationEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM revocation_entry WHERE jti = %s", (jti,)
            ).fetchone()
        return self._row_to_revocation(row) if row else None

    def purge_revocation_entries(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM revocation_entry WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    def count_revocation_entries(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM revocation_entry").fetchone()
        return int(row["n"]) if row else 0
