"""
extractor/file_lock.py

Per-path async locks for read-modify-write cycles on shared JSON documents.

Selector store, snapshot, ledger and output files are all mutated by
several workers in the same event loop; every mutation goes through
`FileLockRegistry.hold(path)` so two writers never interleave.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Union


class FileLockRegistry:
    """Hands out one asyncio.Lock per resolved file path."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get_lock(self, path: Union[str, Path]) -> asyncio.Lock:
        """Get or create the lock for a path."""
        key = str(Path(path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, path: Union[str, Path]):
        async with self.get_lock(path):
            yield

    def __len__(self) -> int:
        return len(self._locks)


_registry = FileLockRegistry()


def get_file_locks() -> FileLockRegistry:
    """Process-wide lock registry."""
    return _registry
