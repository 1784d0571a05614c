"""Session persistence -- the JSON message log used to resume conversations.

The file holds the ordered message list (role, content, tool_calls,
tool_call_id) plus a little metadata.  It is rewritten atomically after
every completed step so a crash never leaves a half-written log behind.
"""

import json
import logging
import os
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_MESSAGE_KEYS = ("role", "content", "tool_calls", "tool_call_id", "name")


class SessionLoadError(Exception):
    """The session file exists but cannot be used."""


def _clean_message(msg: Dict[str, Any]) -> Dict[str, Any]:
    return {k: msg[k] for k in _MESSAGE_KEYS if k in msg and msg[k] is not None}


class SessionPersister:
    """Reads and writes one session log file.

    Args:
        path: JSON file for this session.
        model: Model string recorded alongside the messages.
        session_id: Identifier stored in the file; generated when omitted.
    """

    def __init__(
        self,
        *,
        path: Path,
        model: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self._path = Path(path).expanduser()
        self._model = model
        self._session_id = session_id or uuid.uuid4().hex[:12]
        self._session_start = datetime.now()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def session_id(self) -> str:
        return self._session_id

    def load(self) -> List[Dict[str, Any]]:
        """Return the stored messages, or an empty list for a new session."""
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SessionLoadError(f"cannot read session file {self._path}: {e}") from e

        if isinstance(data, list):
            messages = data
        elif isinstance(data, dict):
            messages = data.get("messages", [])
            self._session_id = str(data.get("session_id") or self._session_id)
            started = data.get("session_start")
            if started:
                try:
                    self._session_start = datetime.fromisoformat(started)
                except ValueError:
                    pass
        else:
            raise SessionLoadError(f"session file {self._path} has unexpected shape")

        if not isinstance(messages, list):
            raise SessionLoadError(f"session file {self._path}: 'messages' must be a list")
        loaded = [_clean_message(m) for m in messages if isinstance(m, dict) and m.get("role")]
        logger.debug("Loaded %d messages from %s", len(loaded), self._path)
        return loaded

    def save(self, messages: List[Dict[str, Any]]) -> None:
        """Rewrite the session file. Failures are logged, never raised."""
        payload = {
            "session_id": self._session_id,
            "model": self._model,
            "session_start": self._session_start.isoformat(),
            "last_updated": datetime.now().isoformat(),
            "message_count": len(messages),
            "messages": [_clean_message(m) for m in messages],
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                os.replace(tmp, self._path)
            except BaseException:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                raise
        except Exception as e:
            logger.debug("Failed to save session log: %s", e)
