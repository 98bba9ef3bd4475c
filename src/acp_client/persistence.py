"""Advisory record of the last created session.

Only used to tell the user that an earlier session exists; the engine never
routes or correlates anything by it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

SESSION_FILE = ".acp-session.json"


class PersistedSession(BaseModel):
    sessionId: str
    lastActive: datetime


class SessionStore:
    def __init__(self, path: Union[str, Path] = SESSION_FILE) -> None:
        self.path = Path(path)

    def load(self) -> Optional[PersistedSession]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read %s: %s", self.path, e)
            return None
        try:
            return PersistedSession.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, e)
            return None

    def save(self, session_id: str) -> PersistedSession:
        record = PersistedSession(sessionId=session_id, lastActive=datetime.now(timezone.utc))
        try:
            self.path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write %s: %s", self.path, e)
        return record
