from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from dichoptic.logging import get_logger
from dichoptic.storage.errors import ConstraintViolation
from dichoptic.storage.memory import USER_MUTABLE_FIELDS
from dichoptic.storage.models import Score, User, UserSettings, ensure_aware, utcnow

_USER_COLUMNS = (
    "id, email, password_hash, is_verified, verification_token, reset_token, "
    "reset_token_expiry, refresh_token_hash, refresh_token_expiry, created_at"
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_token TEXT UNIQUE,
        reset_token TEXT UNIQUE,
        reset_token_expiry TIMESTAMPTZ,
        refresh_token_hash TEXT,
        refresh_token_expiry TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK ((refresh_token_hash IS NULL) = (refresh_token_expiry IS NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS score (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        game TEXT NOT NULL,
        score INTEGER NOT NULL CHECK (score >= 0),
        date TEXT NOT NULL,
        time TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS score_user_game_idx ON score (user_id, game, score DESC)",
    """
    CREATE TABLE IF NOT EXISTS user_settings (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        left_eye_color TEXT NOT NULL,
        right_eye_color TEXT NOT NULL,
        eye_dominance TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, scores and colour settings."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this store needs if they are missing."""
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            is_verified=bool(row["is_verified"]),
            verification_token=row.get("verification_token"),
            reset_token=row.get("reset_token"),
            reset_token_expiry=ensure_aware(row.get("reset_token_expiry")),
            refresh_token_hash=row.get("refresh_token_hash"),
            refresh_token_expiry=ensure_aware(row.get("refresh_token_expiry")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {where}", params
            ).fetchone()
        return self._user_from_row(row) if row else None

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        verification_token: Optional[str] = None,
    ) -> User:
        user = User.new(email, password_hash, verification_token=verification_token)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, is_verified, verification_token, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.is_verified,
                        user.verification_token,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="app_user_email_key"
            ) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email,))

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self._fetch_user("verification_token = %s", (token,))

    def get_user_by_reset_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        if not token:
            return None
        return self._fetch_user(
            "reset_token = %s AND reset_token_expiry > %s", (token, now or utcnow())
        )

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        # Column names come from the whitelist above, values are bound
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING {_USER_COLUMNS}",
                (*fields.values(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def add_score(
        self, user_id: str, game: str, score: int, date: str, time: str
    ) -> Score:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO score (user_id, game, score, date, time)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, user_id, game, score, date, time, created_at
                    """,
                    (user_id, game, score, date, time),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": user_id}, constraint="score_user_id_fkey"
            ) from exc
        return Score(
            id=row["id"],
            user_id=str(row["user_id"]),
            game=row["game"],
            score=row["score"],
            date=row["date"],
            time=row["time"],
            created_at=ensure_aware(row["created_at"]),
        )

    def list_scores(self, user_id: str, game: str, limit: int = 10) -> List[Score]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, game, score, date, time, created_at
                FROM score
                WHERE user_id = %s AND game = %s
                ORDER BY score DESC, id DESC
                LIMIT %s
                """,
                (user_id, game, limit),
            ).fetchall()
        return [
            Score(
                id=row["id"],
                user_id=str(row["user_id"]),
                game=row["game"],
                score=row["score"],
                date=row["date"],
                time=row["time"],
                created_at=ensure_aware(row["created_at"]),
            )
            for row in rows
        ]

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, left_eye_color, right_eye_color, eye_dominance, updated_at
                FROM user_settings WHERE user_id = %s
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return UserSettings(
            user_id=str(row["user_id"]),
            left_eye_color=row["left_eye_color"],
            right_eye_color=row["right_eye_color"],
            eye_dominance=row["eye_dominance"],
            updated_at=ensure_aware(row["updated_at"]),
        )

    def set_user_settings(
        self,
        user_id: str,
        *,
        left_eye_color: str,
        right_eye_color: str,
        eye_dominance: str,
    ) -> UserSettings:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_settings (user_id, left_eye_color, right_eye_color, eye_dominance, updated_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE SET
                        left_eye_color = EXCLUDED.left_eye_color,
                        right_eye_color = EXCLUDED.right_eye_color,
                        eye_dominance = EXCLUDED.eye_dominance,
                        updated_at = EXCLUDED.updated_at
                    RETURNING updated_at
                    """,
                    (user_id, left_eye_color, right_eye_color, eye_dominance),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist",
                {"user_id": user_id},
                constraint="user_settings_user_id_fkey",
            ) from exc
        return UserSettings(
            user_id=user_id,
            left_eye_color=left_eye_color,
            right_eye_color=right_eye_color,
            eye_dominance=eye_dominance,
            updated_at=ensure_aware(row["updated_at"]),
        )
