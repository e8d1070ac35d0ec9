# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Durable storage for the last apply record.
"""
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..errors import StateStoreError
from ..MODELS.state import ApplyRecord
from ..UTILS.hashing import canonical_json, content_hash

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateStore(ABC):
    """Loads and saves the apply record of the previous cycle."""

    @abstractmethod
    def load(self) -> Optional[ApplyRecord]:
        """Returns the last saved record, or None when there is none usable."""

    @abstractmethod
    def save(self, record: ApplyRecord) -> None:
        """Replaces the stored record."""

    @abstractmethod
    def clear(self) -> None:
        """Forgets the stored record."""


class MemoryStateStore(StateStore):
    """Keeps the record in memory; saves are counted."""

    def __init__(self, record: Optional[ApplyRecord] = None):
        self.record = record
        self.saves = 0

    def load(self) -> Optional[ApplyRecord]:
        return self.record.model_copy(deep=True) if self.record else None

    def save(self, record: ApplyRecord) -> None:
        self.record = record.model_copy(deep=True)
        self.saves += 1

    def clear(self) -> None:
        self.record = None


class JsonStateStore(StateStore):
    """
    Stores the record as a single versioned JSON envelope::

        {"version": 1, "checksum": "<sha256 of record>", "record": {...}}

    Writes go to a temporary file in the same directory that is fsynced and
    then renamed over the target, so readers see either the old or the new
    record. A torn, tampered or unreadable file loads as empty, which forces a
    full reconciliation instead of trusting bad state.
    """

    def __init__(self, path: str):
        """
        Initializes the store.

        Args:
            path: Location of the state file. Parent directories are created on save.
        """
        self.path = Path(path)

    def load(self) -> Optional[ApplyRecord]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r') as f:
                envelope = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return None

        if not isinstance(envelope, dict) or envelope.get("version") != STATE_VERSION:
            logger.warning("Ignoring state file %s with unsupported version", self.path)
            return None

        payload = envelope.get("record")
        if content_hash(payload) != envelope.get("checksum"):
            logger.warning("Ignoring state file %s: checksum mismatch", self.path)
            return None

        try:
            return ApplyRecord.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring state file %s: invalid record (%s)", self.path, e)
            return None

    def save(self, record: ApplyRecord) -> None:
        payload = record.model_dump(mode="json")
        envelope = {
            "version": STATE_VERSION,
            "checksum": content_hash(payload),
            "record": payload,
        }
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(directory))
            try:
                with os.fdopen(fd, 'w') as f:
                    f.write(canonical_json(envelope))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StateStoreError(f"Cannot write state file {self.path}: {e}") from e
        logger.debug("Saved apply record to %s", self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
