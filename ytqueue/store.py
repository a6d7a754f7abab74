"""
Persistence backends for job records.

A store maps ``(state, job_id)`` to a JSON-serializable record. The state is
encoded by the container a record lives in, never by the record itself, so a
state transition is a ``move`` between containers: the new copy is written
first and the old copy removed second.
"""
import asyncio
import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiofiles
import aiofiles.os

Record = Dict[str, Any]


class JobStore(ABC):
    """Key-value store for job records, partitioned by state."""

    def __init__(self, states: Iterable[str]):
        self.states: Tuple[str, ...] = tuple(states)
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    async def read(self, state: str, job_id: str) -> Optional[Record]:
        """Returns the record, or None if the id is not stored under ``state``."""

    @abstractmethod
    async def write(self, state: str, job_id: str, record: Record) -> None:
        """Atomically creates or replaces a record."""

    @abstractmethod
    async def delete(self, state: str, job_id: str) -> bool:
        """Removes a record. Returns False if it was not there."""

    @abstractmethod
    async def list(self, state: str) -> List[Tuple[str, Record]]:
        """Returns every readable record under ``state``, in no particular order."""

    async def move(self, job_id: str, from_state: str, to_state: str, record: Record) -> None:
        """
        Moves a record between states.

        The record is written to ``to_state`` before it is removed from
        ``from_state``, so a crash in between leaves a duplicate rather than
        losing the job.
        """
        await self.write(to_state, job_id, record)
        if from_state == to_state:
            return
        try:
            await self.delete(from_state, job_id)
        except OSError as e:
            self.logger.warning(f"Failed to remove old record for {job_id} from {from_state}: {e}")


class DirectoryJobStore(JobStore):
    """
    Stores each record as ``<root>/<state>/<job_id>.json``.

    Writes go to a ``.tmp`` sibling first and are renamed into place, so a
    reader never sees a half-written record.
    """
    SUFFIX = '.json'

    def __init__(self, root: Path, states: Iterable[str]):
        super().__init__(states)
        self.root = Path(root)

    def state_dir(self, state: str) -> Path:
        return self.root / state

    def _path(self, state: str, job_id: str) -> Path:
        return self.state_dir(state) / f"{job_id}{self.SUFFIX}"

    async def ensure_directories(self):
        """Creates one directory per state."""
        for state in self.states:
            await aiofiles.os.makedirs(self.state_dir(state), exist_ok=True)

    async def read(self, state: str, job_id: str) -> Optional[Record]:
        path = self._path(state, job_id)
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                record = json.loads(await f.read())
        except FileNotFoundError:
            return None
        if not isinstance(record, dict):
            raise ValueError(f"expected an object in {path.name}, got {type(record).__name__}")
        return record

    async def write(self, state: str, job_id: str, record: Record) -> None:
        path = self._path(state, job_id)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        temp_path = path.with_name(path.name + '.tmp')
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(record, indent=2))
        await aiofiles.os.replace(temp_path, path)

    async def delete(self, state: str, job_id: str) -> bool:
        try:
            await aiofiles.os.remove(self._path(state, job_id))
            return True
        except FileNotFoundError:
            return False

    async def list(self, state: str) -> List[Tuple[str, Record]]:
        directory = self.state_dir(state)
        await aiofiles.os.makedirs(directory, exist_ok=True)
        # Note: listdir is blocking and must be wrapped
        names = await asyncio.to_thread(os.listdir, directory)

        records: List[Tuple[str, Record]] = []
        for name in names:
            if not name.endswith(self.SUFFIX):
                continue
            job_id = name[:-len(self.SUFFIX)]
            try:
                async with aiofiles.open(directory / name, 'r', encoding='utf-8') as f:
                    record = json.loads(await f.read())
                if not isinstance(record, dict):
                    raise ValueError(f"expected an object, got {type(record).__name__}")
            except FileNotFoundError:
                # Moved or deleted between listdir and open.
                continue
            except (ValueError, OSError) as e:
                self.logger.error(f"Error parsing job file {name}: {e}")
                continue
            records.append((job_id, record))
        return records


class MemoryJobStore(JobStore):
    """In-process store, used for tests and embedding."""

    def __init__(self, states: Iterable[str]):
        super().__init__(states)
        self._data: Dict[str, Dict[str, Record]] = {state: {} for state in self.states}

    async def read(self, state: str, job_id: str) -> Optional[Record]:
        record = self._data.get(state, {}).get(job_id)
        return copy.deepcopy(record) if record is not None else None

    async def write(self, state: str, job_id: str, record: Record) -> None:
        # Round-trip through JSON so the memory store rejects what the disk store would.
        self._data.setdefault(state, {})[job_id] = json.loads(json.dumps(record))

    async def delete(self, state: str, job_id: str) -> bool:
        return self._data.get(state, {}).pop(job_id, None) is not None

    async def list(self, state: str) -> List[Tuple[str, Record]]:
        return [(job_id, copy.deepcopy(record)) for job_id, record in self._data.get(state, {}).items()]
