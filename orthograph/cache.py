from collections.abc import Callable
from contextlib import contextmanager
from os import path
from threading import Lock
from typing import Optional

from .store import STATUS_FAILED, STATUS_OK, HitStore


class SearchCache:
    """Decides whether an external search has to run, and runs each key at most once at a time.

    A search is skipped only when the ledger has a successful entry for the
    exact (query, target, stage) and its artifact still passes the stage's
    validator. Failed searches and broken artifacts are always redone.
    """

    def __init__(
        self,
        store: HitStore,
        taxon: str,
        validators: Optional[dict[str, Callable[[str], bool]]] = None,
    ) -> None:
        self.store = store
        self.taxon = taxon
        self.validators = validators or {}
        self._guard = Lock()
        self._locks = {}

    def _lock_for(self, key: tuple) -> Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = Lock()
            return self._locks[key]

    def artifact_valid(self, stage: str, artifact: str) -> bool:
        if not artifact or not path.exists(artifact):
            return False
        validator = self.validators.get(stage)
        if validator is None:
            return True
        return validator(artifact)

    def should_run(self, query: str, target: str, stage: str) -> bool:
        record = self.store.search_status(query, target, stage, self.taxon)
        if record is None or record.status != STATUS_OK:
            return True
        return not self.artifact_valid(stage, record.artifact)

    @contextmanager
    def claim(self, query: str, target: str, stage: str):
        """Hold the key for the duration of the block and yield whether the search must run.

        Concurrent claims of the same key wait, and see the cached result once
        the first holder has recorded success.
        """
        with self._lock_for((query, target, stage)):
            yield self.should_run(query, target, stage)

    def record_success(self, query: str, target: str, stage: str, artifact: str, hits: int) -> None:
        self.store.mark_searched(query, target, stage, self.taxon, STATUS_OK, artifact, hits)

    def record_failure(self, query: str, target: str, stage: str, artifact: str = "") -> None:
        self.store.mark_searched(query, target, stage, self.taxon, STATUS_FAILED, artifact, 0)
