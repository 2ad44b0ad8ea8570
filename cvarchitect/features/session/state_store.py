"""
cvarchitect/features/session/state_store.py

Persisted session state (the last view, template, resume id and resume draft).

Handles:
- Explicit, versioned keys each bound to a value type
- Validation on read; corrupt values are dropped and replaced by the key's default
- Swappable storage backends (in-memory, JSON file)
- Sign-out cleanup
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, Generic, Optional, Protocol, Tuple, TypeVar
import json
import logging
import os
import tempfile

from pydantic import AfterValidator, TypeAdapter, ValidationError as PydanticValidationError

from cvarchitect.core.config import settings
from cvarchitect.core.errors import ValidationError
from cvarchitect.features.entitlements.manager import GUEST_USER_ID, create_default_subscription
from cvarchitect.features.pricing.catalog import ALL_TEMPLATES
from cvarchitect.models.subscription import UserSubscription


logger = logging.getLogger(__name__)

T = TypeVar("T")


class View(str, Enum):
    LANDING = "LANDING"
    SIGN_IN = "SIGN_IN"
    SIGN_UP = "SIGN_UP"
    FORGOT_PASSWORD = "FORGOT_PASSWORD"
    RESET_PASSWORD = "RESET_PASSWORD"
    ONBOARDING = "ONBOARDING"
    OVERVIEW = "OVERVIEW"
    TEMPLATES = "TEMPLATES"
    MY_TEMPLATES = "MY_TEMPLATES"
    MY_COVER_LETTERS = "MY_COVER_LETTERS"
    EDITOR = "EDITOR"
    SETTINGS = "SETTINGS"
    PRIVACY = "PRIVACY"
    TERMS = "TERMS"
    CONTACT = "CONTACT"


def _known_template(value: str) -> str:
    if value not in ALL_TEMPLATES:
        raise ValueError(f"unknown template: {value}")
    return value


TemplateName = Annotated[str, AfterValidator(_known_template)]


@dataclass(frozen=True)
class StateKey(Generic[T]):
    """A persisted key: storage name, value type and default."""
    name: str
    adapter: TypeAdapter
    default: Callable[[], T] = field(compare=False)


VIEW_KEY: StateKey[View] = StateKey("cv_app_view:v1", TypeAdapter(View), lambda: View.LANDING)
TEMPLATE_KEY: StateKey[str] = StateKey("cv_app_template:v1", TypeAdapter(TemplateName), lambda: "vanguard")
RESUME_ID_KEY: StateKey[Optional[str]] = StateKey("cv_app_resume_id:v1", TypeAdapter(Optional[str]), lambda: None)
RESUME_DATA_KEY: StateKey[Dict[str, Any]] = StateKey("cv_app_data:v1", TypeAdapter(Dict[str, Any]), dict)

SESSION_KEYS: Tuple[StateKey, ...] = (VIEW_KEY, TEMPLATE_KEY, RESUME_ID_KEY, RESUME_DATA_KEY)


class KeyValueBackend(Protocol):
    """
    Raw string storage.

    Implementations must handle:
    - get of a missing key (return None)
    - remove of a missing key (no-op)
    """

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryBackend:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileBackend:
    """One JSON object on disk; writes are atomic (temp file + rename)."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("[session] unreadable state file, starting empty", extra={"path": str(self.path), "error": str(e)})
            return {}
        if not isinstance(data, dict):
            logger.warning("[session] state file is not an object, starting empty", extra={"path": str(self.path)})
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".state-", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class SessionStateStore:
    """Typed access to the persisted session keys."""

    def __init__(self, backend: Optional[KeyValueBackend] = None):
        self.backend = backend or MemoryBackend()

    def get(self, key: StateKey[T]) -> T:
        raw = self.backend.get(key.name)
        if raw is None:
            return key.default()
        try:
            return key.adapter.validate_json(raw)
        except PydanticValidationError as e:
            logger.warning(
                "[session] corrupt value dropped",
                extra={"key": key.name, "error_count": e.error_count()},
            )
            self.backend.remove(key.name)
            return key.default()

    def set(self, key: StateKey[T], value: T) -> None:
        """Validate and store. Storing None removes the key."""
        if value is None:
            self.backend.remove(key.name)
            return
        try:
            validated = key.adapter.validate_python(value)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid value for {key.name}: {e.errors()[0].get('msg')}")
        self.backend.set(key.name, key.adapter.dump_json(validated).decode("utf-8"))

    def remove(self, key: StateKey) -> None:
        self.backend.remove(key.name)

    def clear_session(self) -> None:
        for key in SESSION_KEYS:
            self.backend.remove(key.name)


def store_from_settings(settings_obj=None) -> SessionStateStore:
    cfg = settings_obj or settings
    if cfg.SESSION_STATE_PATH:
        return SessionStateStore(JsonFileBackend(cfg.SESSION_STATE_PATH))
    return SessionStateStore(MemoryBackend())


def sign_out(store: SessionStateStore) -> UserSubscription:
    """Forget the persisted session and fall back to a guest subscription."""
    store.clear_session()
    logger.info("[session] signed out")
    return create_default_subscription(GUEST_USER_ID)
