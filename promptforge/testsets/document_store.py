"""Document Store — persistence contract for test sets.

Stores are synchronous from the engine's point of view and the latest
save() for a uid always wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from promptforge.core.exceptions import ValidationError
from promptforge.testsets.types import TestSet

logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """Base class for test set persistence backends."""

    @abstractmethod
    def load(self, uid: str) -> TestSet | None:
        """Return the stored test set, or None if there is none."""
        ...

    @abstractmethod
    def save(self, test_set: TestSet) -> None:
        ...

    @abstractmethod
    def delete(self, uid: str) -> bool:
        """Remove a test set. Returns False if it did not exist."""
        ...

    @abstractmethod
    def list(self) -> list[TestSet]:
        ...


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store, used by tests and ephemeral deployments."""

    def __init__(self, test_sets: list[TestSet] | None = None):
        self._documents: dict[str, TestSet] = {ts.uid: ts for ts in test_sets or []}

    def load(self, uid: str) -> TestSet | None:
        return self._documents.get(uid)

    def save(self, test_set: TestSet) -> None:
        self._documents[test_set.uid] = test_set

    def delete(self, uid: str) -> bool:
        return self._documents.pop(uid, None) is not None

    def list(self) -> list[TestSet]:
        return list(self._documents.values())


class JsonFileDocumentStore(DocumentStore):
    """One JSON document per test set: <data_dir>/<uid>.json.

    Writes go to a temp file in the same directory and are moved into
    place with os.replace(), so readers never see a half-written file.
    """

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, uid: str) -> Path:
        if not uid or "/" in uid or "\\" in uid or uid.startswith("."):
            raise ValidationError(f"Invalid test set uid: {uid!r}")
        return self.data_dir / f"{uid}.json"

    def load(self, uid: str) -> TestSet | None:
        path = self._path(uid)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as f:
            return TestSet.from_dict(json.load(f))

    def save(self, test_set: TestSet) -> None:
        path = self._path(test_set.uid)
        fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{test_set.uid}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(test_set.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved test set %s to %s", test_set.uid, path)

    def delete(self, uid: str) -> bool:
        path = self._path(uid)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list(self) -> list[TestSet]:
        test_sets: list[TestSet] = []
        for path in sorted(self.data_dir.glob("*.json")):
            try:
                with path.open(encoding="utf-8") as f:
                    test_sets.append(TestSet.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable test set document %s: %s", path.name, e)
        return test_sets
