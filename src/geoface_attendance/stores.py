"""
Identity and attendance record stores.

This module provides the collaborator interfaces the workflow reads
enrollment data from and commits records to, together with in-memory
implementations and an append-only JSON-lines file store. Records are
never rewritten once appended.
"""

import abc
import asyncio
import json
from datetime import date, tzinfo
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog

from .data_models import AttendanceRecord, Identity
from .exceptions import PersistenceError

# Initialize structured logger
logger = structlog.get_logger(__name__)


def _resolve_photo(base: Path, photo: str) -> str:
    if photo.startswith("data:"):
        return photo
    return str(base / photo)


class IdentityStore(abc.ABC):
    """Enrollment records keyed by identity key."""

    @abc.abstractmethod
    async def get(self, identity_key: str) -> Optional[Identity]:
        """Return the identity, or None if it is not enrolled."""


class InMemoryIdentityStore(IdentityStore):
    """Identity store backed by a dictionary."""

    def __init__(self, identities: Optional[Iterable[Identity]] = None) -> None:
        self._identities: Dict[str, Identity] = {}
        for identity in identities or []:
            self.add(identity)

    @classmethod
    def from_json_file(cls, file_path: Path) -> "InMemoryIdentityStore":
        """
        Load enrollment records from a JSON file.

        The file holds a list of objects with ``key``, ``displayName`` and
        either ``descriptors`` (lists of numbers) or ``photos`` (image paths,
        relative to the file's directory).

        Raises
        ------
        PersistenceError
            If the file cannot be read or an entry is malformed.
        """
        file_path = Path(file_path)
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                entries = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(
                f"Failed to load enrollment file: {e}",
                operation="read",
                context={"file_path": str(file_path)},
            )

        if not isinstance(entries, list):
            raise PersistenceError(
                "Enrollment file must contain a list of identities",
                operation="read",
                context={"file_path": str(file_path)},
            )

        identities = []
        for index, entry in enumerate(entries):
            try:
                identities.append(
                    Identity(
                        key=entry["key"],
                        display_name=entry.get("displayName", entry["key"]),
                        descriptors=entry.get("descriptors", []),
                        photos=[
                            _resolve_photo(file_path.parent, photo)
                            for photo in entry.get("photos", [])
                        ],
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise PersistenceError(
                    f"Malformed enrollment entry {index}: {e}",
                    operation="read",
                    context={"file_path": str(file_path)},
                )

        logger.info("Enrollment file loaded", file_path=str(file_path), identities=len(identities))
        return cls(identities)

    def add(self, identity: Identity) -> None:
        self._identities[identity.key.upper()] = identity

    async def get(self, identity_key: str) -> Optional[Identity]:
        return self._identities.get(identity_key.upper())


class RecordStore(abc.ABC):
    """
    Append-only store of committed attendance records.

    Subclasses implement ``append`` and ``records_for``; the queries used by
    the workflow are derived from ``records_for``.
    """

    @abc.abstractmethod
    async def append(self, record: AttendanceRecord) -> None:
        """Persist ``record``. Raises ``PersistenceError`` on failure."""

    @abc.abstractmethod
    async def records_for(self, identity_key: str) -> List[AttendanceRecord]:
        """All records of one identity in commit order."""

    async def most_recent(self, identity_key: str) -> Optional[AttendanceRecord]:
        """The identity's latest record by timestamp, or None."""
        records = await self.records_for(identity_key)
        if not records:
            return None
        return max(records, key=lambda record: record.timestamp)

    async def has_record_on(self, identity_key: str, day: date, tz: tzinfo) -> bool:
        """True if the identity has a record on calendar ``day`` in ``tz``."""
        records = await self.records_for(identity_key)
        return any(record.timestamp.astimezone(tz).date() == day for record in records)


class InMemoryRecordStore(RecordStore):
    """Record store kept in process memory."""

    def __init__(self) -> None:
        self._records: List[AttendanceRecord] = []

    async def append(self, record: AttendanceRecord) -> None:
        self._records.append(record)

    async def records_for(self, identity_key: str) -> List[AttendanceRecord]:
        return [record for record in self._records if record.identity_key == identity_key]

    @property
    def records(self) -> List[AttendanceRecord]:
        return list(self._records)


class JsonLinesRecordStore(RecordStore):
    """
    Append-only file store, one JSON record per line.

    Parameters
    ----------
    file_path : Path
        Store location; parent directories are created on first append.

    Examples
    --------
    >>> store = JsonLinesRecordStore(Path("./data/attendance_records.jsonl"))
    >>> await store.append(record)
    >>> latest = await store.most_recent("AB123")
    """

    def __init__(self, file_path: Path) -> None:
        self.file_path = Path(file_path)
        self._lock = asyncio.Lock()

        logger.info("JsonLinesRecordStore initialized", file_path=str(self.file_path))

    def _append_blocking(self, line: str) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_blocking(self) -> List[AttendanceRecord]:
        if not self.file_path.exists():
            return []

        records = []
        with open(self.file_path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(AttendanceRecord.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    raise PersistenceError(
                        f"Corrupted record at line {line_number}: {e}",
                        operation="read",
                        context={"file_path": str(self.file_path)},
                    )
        return records

    async def append(self, record: AttendanceRecord) -> None:
        line = json.dumps(record.to_dict(), sort_keys=True)
        async with self._lock:
            try:
                await asyncio.to_thread(self._append_blocking, line)
            except OSError as e:
                raise PersistenceError(
                    f"Failed to append attendance record: {e}",
                    operation="append",
                    context={"file_path": str(self.file_path)},
                )

        logger.info(
            "Attendance record appended",
            record_id=record.record_id,
            identity_key=record.identity_key,
            file_path=str(self.file_path),
        )

    async def records_for(self, identity_key: str) -> List[AttendanceRecord]:
        async with self._lock:
            try:
                records = await asyncio.to_thread(self._read_blocking)
            except OSError as e:
                raise PersistenceError(
                    f"Failed to read attendance records: {e}",
                    operation="read",
                    context={"file_path": str(self.file_path)},
                )
        return [record for record in records if record.identity_key == identity_key]
