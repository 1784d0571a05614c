"""Thread-safe conversation history owned by the App."""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional

from agent.session_persister import SessionPersister

logger = logging.getLogger(__name__)


class MessageStore:
    """Ordered message list; every read returns a copy.

    When a persister is attached each mutation is written through to the
    session file.
    """

    def __init__(
        self,
        messages: Optional[List[Dict[str, Any]]] = None,
        persister: Optional[SessionPersister] = None,
    ):
        self._lock = threading.Lock()
        self._messages: List[Dict[str, Any]] = copy.deepcopy(messages or [])
        self._persister = persister

    def add(self, message: Dict[str, Any]) -> None:
        with self._lock:
            self._messages.append(copy.deepcopy(message))
            snapshot = list(self._messages)
        self._persist(snapshot)

    def replace(self, messages: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._messages = copy.deepcopy(messages)
            snapshot = list(self._messages)
        self._persist(snapshot)

    def get_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._messages)

    def clear(self) -> None:
        with self._lock:
            self._messages = []
        self._persist([])

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def _persist(self, messages: List[Dict[str, Any]]) -> None:
        if self._persister is None:
            return
        self._persister.save(messages)
