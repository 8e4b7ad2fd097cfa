from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from constructor_auth.logging import get_logger
from constructor_auth.storage.common import (
    clean_profile_fields,
    clean_user_patch,
    normalize_email,
)
from constructor_auth.storage.errors import ConstraintViolation
from constructor_auth.storage.models import (
    AuditLog,
    AuditLogAction,
    Code,
    CodeType,
    Profile,
    Token,
    User,
)

REQUIRED_TABLES = (
    "app_user",
    "user_profile",
    "verification_code",
    "refresh_token",
    "audit_log",
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    return "username" if "username" in constraint else "email"


class PostgresStore:
    """Credential store backed by Postgres through a psycopg connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            username=row["username"],
            password=row["password"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=bool(row.get("is_active", True)),
            is_super=bool(row.get("is_super", False)),
            roles=list(row.get("roles") or ["user"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _row_to_profile(row: Dict[str, Any]) -> Profile:
        return Profile(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            birth_date=row.get("birth_date"),
            bio=row.get("bio"),
            photo=row.get("photo"),
            gender=row.get("gender"),
            height=row.get("height"),
            weight=row.get("weight"),
            sport_activity=row.get("sport_activity"),
            cheat_meal_day=row.get("cheat_meal_day"),
            period_of_days=row.get("period_of_days"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_code(row: Dict[str, Any]) -> Code:
        return Code(
            id=int(row["id"]),
            username=row["username"],
            code=row["code"],
            type=CodeType(row["type"]),
            created_at=row["created_at"],
            expiration_date=row["expiration_date"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> Token:
        return Token(
            id=str(row["id"]),
            user_id=int(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_audit_log(row: Dict[str, Any]) -> AuditLog:
        return AuditLog(
            id=int(row["id"]),
            action=AuditLogAction(row["action"]),
            success=bool(row["success"]),
            user_id=row.get("user_id"),
            ip_address=row.get("ip_address") or "unknown",
            user_agent=row.get("user_agent") or "unknown",
            device_info=row.get("device_info") or "unknown",
            error_message=row.get("error_message"),
            metadata=row.get("metadata"),
            created_at=row["created_at"],
        )

    # users
    @staticmethod
    def _user_insert(
        *,
        email: str,
        username: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
        is_super: bool = False,
        roles: Optional[List[str]] = None,
    ) -> Tuple[str, tuple]:
        return (
            """
            INSERT INTO app_user (first_name, last_name, username, email, password, is_active, is_super, roles)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                first_name,
                last_name,
                username.strip().lower(),
                normalize_email(email),
                password,
                is_active,
                is_super,
                list(roles) if roles else ["user"],
            ),
        )

    @staticmethod
    def _profile_insert(user_id: int, fields: Dict[str, Any]) -> Tuple[str, tuple]:
        values = clean_profile_fields(fields)
        columns = ["user_id", *values.keys()]
        placeholders = ", ".join(["%s"] * len(columns))
        return (
            f"INSERT INTO user_profile ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
            (user_id, *values.values()),
        )

    def create_user(self, **fields: Any) -> User:
        query, params = self._user_insert(**fields)
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def create_user_with_profile(
        self, *, profile: Optional[Dict[str, Any]] = None, **user_fields: Any
    ) -> Tuple[User, Profile]:
        """Insert a user and its profile in one transaction."""
        user_query, user_params = self._user_insert(**user_fields)
        try:
            with self._connect() as conn, conn.transaction():
                user_row = conn.execute(user_query, user_params).fetchone()
                profile_query, profile_params = self._profile_insert(
                    int(user_row["id"]), profile or {}
                )
                profile_row = conn.execute(profile_query, profile_params).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(user_row), self._row_to_profile(profile_row)

    def get_user(self, user_id: int, *, include_deleted: bool = False) -> Optional[User]:
        query = "SELECT * FROM app_user WHERE id = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = %s AND deleted_at IS NULL",
                (username.strip().lower(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s AND deleted_at IS NULL",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: int, patch: Dict[str, Any]) -> Optional[User]:
        updates = clean_user_patch(patch)
        if not updates:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in updates)
        params = [*updates.values(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET {assignments}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING *
                    """,
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row) if row else None

    def soft_delete_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET deleted_at = now(), updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, *, offset: int = 0, limit: int = 20) -> Tuple[List[User], int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE deleted_at IS NULL ORDER BY id DESC OFFSET %s LIMIT %s",
                (offset, limit),
            ).fetchall()
            total_row = conn.execute(
                "SELECT COUNT(*) AS total FROM app_user WHERE deleted_at IS NULL"
            ).fetchone()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_user(row) for row in rows], total

    # profiles
    def create_profile(self, user_id: int, **fields: Any) -> Profile:
        query, params = self._profile_insert(user_id, fields)
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("profile already exists", {"field": "user_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("profile owner missing", {"field": "user_id"})
        return self._row_to_profile(row)

    def get_profile(self, user_id: int) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_profile WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_profile(row) if row else None

    def update_profile(self, user_id: int, patch: Dict[str, Any]) -> Optional[Profile]:
        updates = clean_profile_fields(patch)
        if not updates:
            return self.get_profile(user_id)
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_profile SET {assignments}, updated_at = now() WHERE user_id = %s RETURNING *",
                [*updates.values(), user_id],
            ).fetchone()
        return self._row_to_profile(row) if row else None

    # one-time codes
    def create_code(
        self, username: str, code: str, code_type: CodeType, expiration_date: datetime
    ) -> Code:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO verification_code (username, code, type, expiration_date)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (username, code, CodeType(code_type).value, expiration_date),
            ).fetchone()
        return self._row_to_code(row)

    def delete_codes(self, username: str, code_type: CodeType) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_code WHERE username = %s AND type = %s",
                (username, CodeType(code_type).value),
            )
            return cur.rowcount or 0

    def replace_code(
        self, username: str, code: str, code_type: CodeType, expiration_date: datetime
    ) -> Code:
        """Drop earlier codes for (username, type) and insert the new one atomically."""
        type_value = CodeType(code_type).value
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "DELETE FROM verification_code WHERE username = %s AND type = %s",
                (username, type_value),
            )
            row = conn.execute(
                """
                INSERT INTO verification_code (username, code, type, expiration_date)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (username, code, type_value, expiration_date),
            ).fetchone()
        return self._row_to_code(row)

    def get_latest_code(
        self, username: str, code: str, code_type: CodeType
    ) -> Optional[Code]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM verification_code
                WHERE username = %s AND code = %s AND type = %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (username, code, CodeType(code_type).value),
            ).fetchone()
        return self._row_to_code(row) if row else None

    # refresh tokens
    def save_token(self, user_id: int, token: str, expires_at: datetime) -> Token:
        record = Token.new(user_id, token, expires_at)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO refresh_token (id, user_id, token, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (record.id, user_id, token, expires_at),
            ).fetchone()
        return self._row_to_token(row)

    def get_token(self, token: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete_tokens_for_user(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    # audit log
    def append_audit_log(
        self,
        action: AuditLogAction,
        success: bool,
        *,
        user_id: Optional[int] = None,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        device_info: str = "unknown",
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (user_id, action, ip_address, user_agent, device_info, success, error_message, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    AuditLogAction(action).value,
                    ip_address,
                    user_agent,
                    device_info,
                    success,
                    error_message,
                    Jsonb(metadata) if metadata else None,
                ),
            ).fetchone()
        return self._row_to_audit_log(row)

    def list_audit_logs(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[AuditLogAction] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(AuditLogAction(action).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC, id DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._row_to_audit_log(row) for row in rows]

    def count_audit_events_by_day(
        self, start: datetime, end: datetime, actions: Iterable[AuditLogAction]
    ) -> List[Tuple[date, str, int]]:
        action_values = [AuditLogAction(a).value for a in actions]
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT (date_trunc('day', created_at AT TIME ZONE 'UTC'))::date AS day,
                       action,
                       COUNT(*) AS total
                FROM audit_log
                WHERE success = TRUE
                  AND action = ANY(%s)
                  AND created_at BETWEEN %s AND %s
                GROUP BY day, action
                ORDER BY day, action
                """,
                (action_values, start, end),
            ).fetchall()
        return [(row["day"], row["action"], int(row["total"])) for row in rows]
