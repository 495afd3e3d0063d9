"""Flat JSON document persistence for the ledger."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

from ..errors import StoreCorruptionError

_LOCKS: dict[Path, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    with _LOCKS_GUARD:
        return _LOCKS.setdefault(path, threading.RLock())


class JsonDocument:
    """A single JSON object of id-keyed sections, rewritten wholesale on every change.

    The ledger supports one writer per repository. Mutations are serialized
    per path within the process and land through write-temp-then-rename, so
    readers never observe a half-written document. Nothing coordinates
    separate processes; two of them mutating the same file race and the last
    writer wins.
    """

    def __init__(self, path: Path, *, sections: Sequence[str]) -> None:
        self._path = Path(path).expanduser().resolve()
        self._sections = tuple(sections)
        self._lock = _lock_for(self._path)

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> dict[str, dict[str, Any]]:
        """Load the document; a missing file is an empty ledger, an unparsable one is an error."""

        if not self._path.exists():
            return {section: {} for section in self._sections}

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreCorruptionError(f"Ledger document {self._path} is not valid JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise StoreCorruptionError(f"Ledger document {self._path} must contain a JSON object")
        for section in self._sections:
            value = data.setdefault(section, {})
            if not isinstance(value, dict):
                raise StoreCorruptionError(
                    f"Ledger document {self._path} has a malformed '{section}' section"
                )
        return data

    def write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @contextmanager
    def transaction(self) -> Iterator[dict[str, dict[str, Any]]]:
        """Read-modify-write under the document lock; nothing is written if the block raises."""

        with self._lock:
            data = self.read()
            yield data
            self.write(data)


__all__ = ["JsonDocument"]
