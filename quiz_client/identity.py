"""Identity cache: a small JSON key/value file holding one identity record."""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import ValidationError

from quiz_client.models import Identity


log = logging.getLogger(__name__)

DEFAULT_KEY = 'mathQuizUser'


class IdentityCache:
    """Persists the server-assigned identity across sessions.

    The file maps string keys to JSON text, so the identity is stored as
    ``{"mathQuizUser": "{\\"id\\": ..., \\"displayName\\": ...}"}``.
    """

    def __init__(self, path: Union[str, Path], key: str = DEFAULT_KEY):
        self.path = Path(path).expanduser()
        self.key = key

    @classmethod
    def from_config(cls, config) -> 'IdentityCache':
        return cls(config.IDENTITY_CACHE_PATH, key=config.IDENTITY_CACHE_KEY)

    def load(self) -> Optional[Identity]:
        raw = self._read_store().get(self.key)
        if raw is None:
            return None
        try:
            return Identity.model_validate_json(raw)
        except (ValidationError, TypeError, ValueError) as e:
            log.warning(f"[identity-cache] ignoring malformed identity record: {e}")
            return None

    def save(self, identity: Identity) -> None:
        store = self._read_store()
        store[self.key] = identity.model_dump_json(by_alias=True)
        self._write_store(store)
        log.debug(f"[identity-cache] saved id={identity.id}")

    def clear(self) -> None:
        store = self._read_store()
        if store.pop(self.key, None) is not None:
            self._write_store(store)

    def _read_store(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            log.warning(f"[identity-cache] storage file unreadable, treating as empty: {e}")
            return {}
        if not isinstance(data, dict):
            log.warning('[identity-cache] storage file is not an object, treating as empty')
            return {}
        return data

    def _write_store(self, store: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix('.tmp')
        try:
            temp_path.write_text(json.dumps(store, indent=2), encoding='utf-8')
            temp_path.replace(self.path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
