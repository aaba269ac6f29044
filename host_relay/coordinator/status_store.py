"""Persisted resource status so a recreated client can recover lifecycle state."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ..ipc.messages import ResourceStatus, StatusChanged

logger = logging.getLogger(__name__)

# Fixed key of the flat status record inside the state file
STATUS_KEY = "resource_status"
STATUS_FILENAME = "resource_status.json"


class StatusRecord(BaseModel):
    """Flat persisted status record."""
    status: ResourceStatus = ResourceStatus.NOT_LOADED
    detail_message: Optional[str] = None
    progress_percent: Optional[int] = Field(default=None, ge=0, le=100)

    def to_event(self) -> StatusChanged:
        return StatusChanged(
            status=self.status,
            detail_message=self.detail_message,
            progress_percent=self.progress_percent,
        )


class StatusStore:
    """
    JSON file holding one StatusRecord under STATUS_KEY.

    Only the coordinator writes it. Each write replaces the file atomically
    (write to a temp file in the same directory, then os.replace), so readers
    see either the previous record or the new one, never a partial one.
    """

    def __init__(self, state_dir: Union[str, Path]):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / STATUS_FILENAME
        self._lock = threading.Lock()

    def initialize(self) -> StatusRecord:
        """
        Create the record with NotLoaded on first activation.

        An existing record is kept, so a coordinator restart does not reset
        what clients will recover.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            logger.info(f"Creating status record: {self.path}")
            return self.write(StatusRecord())
        return self.read()

    def read(self) -> StatusRecord:
        """Read the current record; a missing or unreadable file means NotLoaded."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return StatusRecord()
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Status record unreadable ({e}), treating as not_loaded")
            return StatusRecord()

        try:
            return StatusRecord.model_validate(data.get(STATUS_KEY, {}))
        except (AttributeError, ValidationError) as e:
            logger.warning(f"Status record invalid ({e}), treating as not_loaded")
            return StatusRecord()

    def write(self, record: StatusRecord) -> StatusRecord:
        """Persist record atomically (last writer wins)."""
        payload = json.dumps({STATUS_KEY: record.model_dump(mode="json")})
        with self._lock:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.state_dir, prefix=".status-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        logger.debug(f"Status persisted: {record.status.value}")
        return record

    def update(
        self,
        status: ResourceStatus,
        detail_message: Optional[str] = None,
        progress_percent: Optional[int] = None
    ) -> StatusRecord:
        """Write a new record built from the given fields."""
        return self.write(StatusRecord(
            status=status,
            detail_message=detail_message,
            progress_percent=progress_percent,
        ))
