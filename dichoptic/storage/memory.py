from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from dichoptic.logging import get_logger
from dichoptic.storage.errors import ConstraintViolation
from dichoptic.storage.models import Score, User, UserSettings, ensure_aware, utcnow

# Columns callers may change through update_user
USER_MUTABLE_FIELDS = frozenset(
    {
        "password_hash",
        "is_verified",
        "verification_token",
        "reset_token",
        "reset_token_expiry",
        "refresh_token_hash",
        "refresh_token_expiry",
    }
)
_USER_DATETIME_FIELDS = ("reset_token_expiry", "refresh_token_expiry", "created_at")


class MemoryStore:
    """In-process store for users, scores and colour settings.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    write and reloaded on construction, so a restarted dev server keeps its
    accounts.
    """

    def __init__(self, fs_root: str = "/tmp/dichoptic", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.scores: List[Score] = []
        self.settings: Dict[str, UserSettings] = {}
        self._score_id_seq = 1
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        verification_token: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="user_email_key"
                )
            user = User.new(email, password_hash, verification_token=verification_token)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.verification_token == token), None
            )

    def get_user_by_reset_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        """Return the user holding ``token`` only while it is unexpired."""
        if not token:
            return None
        now = now or utcnow()
        with self._data_lock:
            for user in self.users.values():
                expiry = ensure_aware(user.reset_token_expiry)
                if user.reset_token == token and expiry is not None and expiry > now:
                    return user
            return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **fields)
            self.users[user_id] = updated
            self._persist_state()
            return updated

    # -- scores ------------------------------------------------------------

    def add_score(
        self, user_id: str, game: str, score: int, date: str, time: str
    ) -> Score:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": user_id}, constraint="score_user_id_fkey"
                )
            entry = Score(
                id=self._score_id_seq,
                user_id=user_id,
                game=game,
                score=score,
                date=date,
                time=time,
            )
            self._score_id_seq += 1
            self.scores.append(entry)
            self._persist_state()
            return entry

    def list_scores(self, user_id: str, game: str, limit: int = 10) -> List[Score]:
        with self._data_lock:
            matching = [s for s in self.scores if s.user_id == user_id and s.game == game]
        # Highest first; ties go to the most recent entry
        matching.sort(key=lambda s: (s.score, s.id), reverse=True)
        return matching[:limit]

    # -- settings ----------------------------------------------------------

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        with self._data_lock:
            return self.settings.get(user_id)

    def set_user_settings(
        self,
        user_id: str,
        *,
        left_eye_color: str,
        right_eye_color: str,
        eye_dominance: str,
    ) -> UserSettings:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"user_id": user_id},
                    constraint="user_settings_user_id_fkey",
                )
            prefs = UserSettings(
                user_id=user_id,
                left_eye_color=left_eye_color,
                right_eye_color=right_eye_color,
                eye_dominance=eye_dominance,
            )
            self.settings[user_id] = prefs
            self._persist_state()
            return prefs

    # -- persistence -------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_aware(datetime.fromisoformat(raw)) if raw else None

    def _serialize_user(self, user: User) -> dict:
        data = asdict(user)
        for name in _USER_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(data[name])
        return data

    def _deserialize_user(self, data: dict) -> User:
        fields = dict(data)
        for name in _USER_DATETIME_FIELDS:
            fields[name] = self._deserialize_datetime(fields.get(name))
        if fields["created_at"] is None:
            fields["created_at"] = utcnow()
        return User(**fields)

    def _serialize_score(self, score: Score) -> dict:
        data = asdict(score)
        data["created_at"] = self._serialize_datetime(score.created_at)
        return data

    def _deserialize_score(self, data: dict) -> Score:
        fields = dict(data)
        fields["created_at"] = self._deserialize_datetime(fields.get("created_at")) or utcnow()
        return Score(**fields)

    def _serialize_settings(self, prefs: UserSettings) -> dict:
        data = asdict(prefs)
        data["updated_at"] = self._serialize_datetime(prefs.updated_at)
        return data

    def _deserialize_settings(self, data: dict) -> UserSettings:
        fields = dict(data)
        fields["updated_at"] = self._deserialize_datetime(fields.get("updated_at")) or utcnow()
        return UserSettings(**fields)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "scores": [self._serialize_score(s) for s in self.scores],
            "settings": [self._serialize_settings(p) for p in self.settings.values()],
            "score_id_seq": self._score_id_seq,
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
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.scores = [self._deserialize_score(s) for s in data.get("scores", [])]
        self.settings = {
            p["user_id"]: self._deserialize_settings(p) for p in data.get("settings", [])
        }
        self._score_id_seq = data.get(
            "score_id_seq", max((s.id for s in self.scores), default=0) + 1
        )
        self.logger.info(
            "memory_store_state_loaded", users=len(self.users), scores=len(self.scores)
        )
        return True
