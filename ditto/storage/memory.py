from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ditto.logging import get_logger
from ditto.storage.errors import ConstraintViolation
from ditto.storage.models import User


class MemoryStore:
    """Thread-safe in-memory user store with an optional JSON snapshot."""

    def __init__(self, fs_root: str = "/tmp/ditto", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so persistence can run inside an already-locked mutation
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info("user_store_loaded", users=len(self.users))

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    # users
    def create_user(
        self,
        *,
        first_name: str = "",
        last_name: str = "",
        email: Optional[str] = None,
        phone: Optional[str] = None,
        auth_provider: Optional[str] = None,
        social_id: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if phone and any(u.phone == phone for u in self.users.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if social_id and self._find_by_provider(auth_provider, social_id):
                raise ConstraintViolation(
                    "social identity already linked", {"field": "social_id"}
                )
            if email and any(
                u.email == email and u.auth_provider == auth_provider
                for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user_id = user_id or str(uuid.uuid4())
            if user_id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            user = User(
                id=user_id,
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone=phone,
                auth_provider=auth_provider,
                social_id=social_id,
                profile_picture_url=profile_picture_url,
            )
            self.users[user_id] = user
            try:
                self._persist_state()
            except RuntimeError:
                self.users.pop(user_id, None)
                raise
            return user

    def _find_by_provider(
        self, provider: Optional[str], provider_uid: str
    ) -> Optional[User]:
        return next(
            (
                u
                for u in self.users.values()
                if u.auth_provider == provider and u.social_id == provider_uid
            ),
            None,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.phone == phone), None)

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            return self._find_by_provider(provider, provider_uid)

    def get_user_by_email_and_provider(
        self, email: str, provider: str
    ) -> Optional[User]:
        if not email:
            return None
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == email and u.auth_provider == provider
                ),
                None,
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at)
            return users[:limit]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed is None:
                return False
            try:
                self._persist_state()
            except RuntimeError:
                self.users[user_id] = removed
                raise
            return True

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist user store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "phone": user.phone,
            "auth_provider": user.auth_provider,
            "social_id": user.social_id,
            "profile_picture_url": user.profile_picture_url,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        created_at = self._deserialize_datetime(data["created_at"])
        return User(
            id=str(data["id"]),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email=data.get("email"),
            phone=data.get("phone"),
            auth_provider=data.get("auth_provider"),
            social_id=data.get("social_id"),
            profile_picture_url=data.get("profile_picture_url"),
            created_at=created_at,
            updated_at=(
                self._deserialize_datetime(data["updated_at"])
                if data.get("updated_at")
                else created_at
            ),
        )
