"""Relational record of one analysis run.

Every row is scoped to a (taxon, orthoset) pair. Hit tables are append-only,
the only destructive operation is clear() which drops a whole scope before a
fresh run. All statements are parameterized, table names are module constants.
"""
import sqlite3
import time
from collections import defaultdict
from collections.abc import Iterable
from contextlib import contextmanager
from threading import Lock
from typing import Callable, Optional

from msgspec import Struct

from .exceptions import ConnectivityError, ReferentialIntegrityError
from .orthoset import ReferenceSet
from .records import (
    HmmHit,
    ReciprocalHit,
    Transcript,
    digest,
    fragment_of,
    log_evalue,
)

STATUS_OK = "ok"
STATUS_FAILED = "failed"

SCHEMA = """
CREATE TABLE IF NOT EXISTS transcripts (
    taxon TEXT NOT NULL,
    orthoset TEXT NOT NULL,
    digest TEXT NOT NULL,
    header TEXT NOT NULL,
    nt_header TEXT NOT NULL,
    frame INTEGER NOT NULL,
    sequence TEXT NOT NULL,
    PRIMARY KEY (taxon, orthoset, digest)
);
CREATE TABLE IF NOT EXISTS nt_sequences (
    taxon TEXT NOT NULL,
    orthoset TEXT NOT NULL,
    header TEXT NOT NULL,
    sequence TEXT NOT NULL,
    PRIMARY KEY (taxon, orthoset, header)
);
CREATE TABLE IF NOT EXISTS hmmsearch (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    taxon TEXT NOT NULL,
    orthoset TEXT NOT NULL,
    query TEXT NOT NULL,
    target TEXT NOT NULL,
    fragment TEXT NOT NULL,
    score REAL NOT NULL,
    evalue REAL NOT NULL,
    log_evalue REAL NOT NULL,
    hmm_start INTEGER NOT NULL,
    hmm_end INTEGER NOT NULL,
    ali_start INTEGER NOT NULL,
    ali_end INTEGER NOT NULL,
    env_start INTEGER NOT NULL,
    env_end INTEGER NOT NULL,
    UNIQUE (taxon, orthoset, query, target, env_start, env_end)
);
CREATE TABLE IF NOT EXISTS blast (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    taxon TEXT NOT NULL,
    orthoset TEXT NOT NULL,
    query TEXT NOT NULL,
    target TEXT NOT NULL,
    score REAL NOT NULL,
    evalue REAL NOT NULL,
    log_evalue REAL NOT NULL,
    ref_start INTEGER NOT NULL,
    ref_end INTEGER NOT NULL,
    UNIQUE (taxon, orthoset, query, target, ref_start, ref_end)
);
CREATE TABLE IF NOT EXISTS searches (
    taxon TEXT NOT NULL,
    orthoset TEXT NOT NULL,
    stage TEXT NOT NULL,
    query TEXT NOT NULL,
    target TEXT NOT NULL,
    status TEXT NOT NULL,
    hits INTEGER NOT NULL,
    artifact TEXT NOT NULL,
    PRIMARY KEY (taxon, orthoset, stage, query, target)
);
CREATE INDEX IF NOT EXISTS hmmsearch_query ON hmmsearch (taxon, orthoset, query);
CREATE INDEX IF NOT EXISTS hmmsearch_fragment ON hmmsearch (taxon, orthoset, fragment);
CREATE INDEX IF NOT EXISTS hmmsearch_evalue ON hmmsearch (log_evalue);
CREATE INDEX IF NOT EXISTS blast_query ON blast (taxon, orthoset, query);
"""

SCOPED_TABLES = ("transcripts", "nt_sequences", "hmmsearch", "blast", "searches")

HMM_COLUMNS = (
    "query, target, taxon, evalue, score, env_start, env_end, hmm_start, hmm_end, ali_start, ali_end"
)
BLAST_COLUMNS = "query, target, taxon, evalue, score, ref_start, ref_end"


class SearchRecord(Struct, frozen=True):
    stage: str
    query: str
    target: str
    status: str
    hits: int
    artifact: str


class RetryPolicy:
    """Retry an operation on sqlite connection errors at a fixed interval.

    Gives up with ConnectivityError once the total time spent waiting reaches
    timeout. The sleep function is injectable for tests.
    """

    def __init__(self, interval: float = 10.0, timeout: float = 60.0, sleep: Callable = time.sleep):
        self.interval = interval
        self.timeout = timeout
        self.sleep = sleep

    def run(self, operation: Callable, description: str):
        waited = 0.0
        while True:
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if waited >= self.timeout:
                    raise ConnectivityError(
                        f"Giving up on {description} after {waited:.0f}s: {e}"
                    ) from e
                self.sleep(self.interval)
                waited += self.interval


class HitStore:
    def __init__(
        self,
        db_path: str,
        reference_set: ReferenceSet,
        retry: Optional[RetryPolicy] = None,
        busy_timeout: float = 5.0,
    ) -> None:
        self.db_path = db_path
        self.reference_set = reference_set
        self.orthoset = reference_set.name
        self.retry = retry or RetryPolicy()
        self.busy_timeout = busy_timeout
        self._locks_guard = Lock()
        self._taxon_locks = {}

    @contextmanager
    def _connect(self):
        con = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        try:
            yield con
            con.commit()
        except BaseException:
            con.rollback()
            raise
        finally:
            con.close()

    def _run(self, description: str, func: Callable):
        def operation():
            with self._connect() as con:
                return func(con)

        return self.retry.run(operation, description)

    def _taxon_lock(self, taxon: str) -> Lock:
        with self._locks_guard:
            if taxon not in self._taxon_locks:
                self._taxon_locks[taxon] = Lock()
            return self._taxon_locks[taxon]

    def initialize(self) -> None:
        def create(con):
            con.execute("PRAGMA journal_mode = WAL")
            con.executescript(SCHEMA)

        self._run("creating tables", create)

    def clear(self, taxon: str) -> None:
        """Remove every row of this taxon and orthoset. Writers for the taxon wait."""

        def delete(con):
            for table in SCOPED_TABLES:
                con.execute(
                    f"DELETE FROM {table} WHERE taxon = ? AND orthoset = ?",
                    (taxon, self.orthoset),
                )

        with self._taxon_lock(taxon):
            self._run(f"clearing {taxon}", delete)

    # Transcripts

    def add_transcripts(self, transcripts: Iterable[Transcript]) -> int:
        by_taxon = defaultdict(list)
        for transcript in transcripts:
            by_taxon[transcript.taxon].append(
                (
                    transcript.taxon,
                    self.orthoset,
                    transcript.digest,
                    transcript.header,
                    transcript.nt_header,
                    transcript.frame,
                    transcript.sequence,
                )
            )

        def insert(rows):
            def func(con):
                con.executemany(
                    "INSERT OR IGNORE INTO transcripts "
                    "(taxon, orthoset, digest, header, nt_header, frame, sequence) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )

            return func

        count = 0
        for taxon, rows in by_taxon.items():
            with self._taxon_lock(taxon):
                self._run("storing transcripts", insert(rows))
            count += len(rows)
        return count

    def add_nt_sequences(self, taxon: str, records: Iterable[tuple[str, str]]) -> None:
        rows = [(taxon, self.orthoset, header, sequence) for header, sequence in records]

        def insert(con):
            con.executemany(
                "INSERT OR IGNORE INTO nt_sequences (taxon, orthoset, header, sequence) VALUES (?, ?, ?, ?)",
                rows,
            )

        with self._taxon_lock(taxon):
            self._run("storing nucleotide sequences", insert)

    def transcript(self, transcript_digest: str, taxon: str) -> Optional[Transcript]:
        def select(con):
            return con.execute(
                "SELECT digest, header, sequence, taxon, nt_header, frame FROM transcripts "
                "WHERE taxon = ? AND orthoset = ? AND digest = ?",
                (taxon, self.orthoset, transcript_digest),
            ).fetchone()

        row = self._run("fetching transcript", select)
        return Transcript(*row) if row else None

    def transcripts(self, taxon: str) -> list[Transcript]:
        def select(con):
            return con.execute(
                "SELECT digest, header, sequence, taxon, nt_header, frame FROM transcripts "
                "WHERE taxon = ? AND orthoset = ? ORDER BY digest",
                (taxon, self.orthoset),
            ).fetchall()

        return [Transcript(*row) for row in self._run("fetching transcripts", select)]

    def nt_sequence(self, header: str, taxon: str) -> Optional[str]:
        def select(con):
            return con.execute(
                "SELECT sequence FROM nt_sequences WHERE taxon = ? AND orthoset = ? AND header = ?",
                (taxon, self.orthoset, header),
            ).fetchone()

        row = self._run("fetching nucleotide sequence", select)
        return row[0] if row else None

    # Hits

    def _fragment_for(self, con, hit: HmmHit) -> str:
        if hit.query not in self.reference_set:
            raise ReferentialIntegrityError(
                f"Ortholog group {hit.query} is not part of {self.orthoset}"
            )
        row = con.execute(
            "SELECT sequence FROM transcripts WHERE taxon = ? AND orthoset = ? AND digest = ?",
            (hit.taxon, self.orthoset, hit.target),
        ).fetchone()
        if row is None:
            raise ReferentialIntegrityError(
                f"HMM hit for {hit.query} references unknown transcript {hit.target}"
            )
        return digest(fragment_of(row[0], hit.env_start, hit.env_end))

    @staticmethod
    def _insert_hmm_hit(con, orthoset: str, hit: HmmHit, fragment: str) -> None:
        con.execute(
            "INSERT OR IGNORE INTO hmmsearch (taxon, orthoset, query, target, fragment, score, "
            "evalue, log_evalue, hmm_start, hmm_end, ali_start, ali_end, env_start, env_end) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                hit.taxon,
                orthoset,
                hit.query,
                hit.target,
                fragment,
                hit.score,
                hit.evalue,
                log_evalue(hit.evalue),
                hit.hmm_start,
                hit.hmm_end,
                hit.ali_start,
                hit.ali_end,
                hit.env_start,
                hit.env_end,
            ),
        )

    def record_hmm_hit(self, hit: HmmHit) -> str:
        """Store one HMM domain hit and return the digest of its envelope fragment."""

        def insert(con):
            fragment = self._fragment_for(con, hit)
            self._insert_hmm_hit(con, self.orthoset, hit, fragment)
            return fragment

        with self._taxon_lock(hit.taxon):
            return self._run("recording hmmsearch hit", insert)

    def record_hmm_hits(self, hits: Iterable[HmmHit]) -> list[ReferentialIntegrityError]:
        """Store a batch of hits, skipping the ones that fail integrity checks.

        Returns:
        -------
            list[ReferentialIntegrityError]: One error per skipped hit.
        """
        by_taxon = defaultdict(list)
        for hit in hits:
            by_taxon[hit.taxon].append(hit)

        errors = []

        def insert(batch):
            def func(con):
                batch_errors = []
                for hit in batch:
                    try:
                        fragment = self._fragment_for(con, hit)
                    except ReferentialIntegrityError as e:
                        batch_errors.append(e)
                        continue
                    self._insert_hmm_hit(con, self.orthoset, hit, fragment)
                return batch_errors

            return func

        for taxon, batch in by_taxon.items():
            with self._taxon_lock(taxon):
                errors.extend(self._run("recording hmmsearch hits", insert(batch)))
        return errors

    def record_reciprocal_hit(self, hit: ReciprocalHit) -> None:
        self.record_reciprocal_hits([hit])

    def record_reciprocal_hits(self, hits: Iterable[ReciprocalHit]) -> None:
        by_taxon = defaultdict(list)
        for hit in hits:
            by_taxon[hit.taxon].append(hit)

        def insert(batch):
            def func(con):
                for hit in batch:
                    known = con.execute(
                        "SELECT 1 FROM hmmsearch WHERE taxon = ? AND orthoset = ? AND fragment = ? LIMIT 1",
                        (hit.taxon, self.orthoset, hit.query),
                    ).fetchone()
                    if known is None:
                        raise ReferentialIntegrityError(
                            f"Reciprocal hit query {hit.query} is not a recorded HMM fragment"
                        )
                    con.execute(
                        "INSERT OR IGNORE INTO blast (taxon, orthoset, query, target, score, evalue, "
                        "log_evalue, ref_start, ref_end) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            hit.taxon,
                            self.orthoset,
                            hit.query,
                            hit.target,
                            hit.score,
                            hit.evalue,
                            log_evalue(hit.evalue),
                            hit.start,
                            hit.end,
                        ),
                    )

            return func

        for taxon, batch in by_taxon.items():
            with self._taxon_lock(taxon):
                self._run("recording reciprocal hits", insert(batch))

    def hits_for_group(self, group_id: str, taxon: str) -> list[HmmHit]:
        def select(con):
            return con.execute(
                f"SELECT {HMM_COLUMNS} FROM hmmsearch WHERE taxon = ? AND orthoset = ? AND query = ? "
                "ORDER BY log_evalue, target, env_start",
                (taxon, self.orthoset, group_id),
            ).fetchall()

        return [HmmHit(*row) for row in self._run("fetching hits for group", select)]

    def reciprocal_hits_for(self, fragment: str, taxon: str) -> list[ReciprocalHit]:
        def select(con):
            return con.execute(
                f"SELECT {BLAST_COLUMNS} FROM blast WHERE taxon = ? AND orthoset = ? AND query = ? "
                "ORDER BY log_evalue, score DESC, target",
                (taxon, self.orthoset, fragment),
            ).fetchall()

        return [ReciprocalHit(*row) for row in self._run("fetching reciprocal hits", select)]

    def groups_with_hits(self, taxon: str) -> list[str]:
        def select(con):
            return con.execute(
                "SELECT DISTINCT query FROM hmmsearch WHERE taxon = ? AND orthoset = ? ORDER BY query",
                (taxon, self.orthoset),
            ).fetchall()

        return [row[0] for row in self._run("fetching groups with hits", select)]

    def hit_transcripts(self, taxon: str) -> list[str]:
        def select(con):
            return con.execute(
                "SELECT DISTINCT target FROM hmmsearch WHERE taxon = ? AND orthoset = ? ORDER BY target",
                (taxon, self.orthoset),
            ).fetchall()

        return [row[0] for row in self._run("fetching hit transcripts", select)]

    def log_evalue_counts(self, taxon: str) -> list[tuple[float, int]]:
        """Number of HMM hits per distinct log evalue, best first."""

        def select(con):
            return con.execute(
                "SELECT log_evalue, COUNT(*) FROM hmmsearch WHERE taxon = ? AND orthoset = ? "
                "GROUP BY log_evalue ORDER BY log_evalue",
                (taxon, self.orthoset),
            ).fetchall()

        return [tuple(row) for row in self._run("counting log evalues", select)]

    def score_counts(self, taxon: str) -> list[tuple[float, int]]:
        def select(con):
            return con.execute(
                "SELECT score, COUNT(*) FROM hmmsearch WHERE taxon = ? AND orthoset = ? "
                "GROUP BY score ORDER BY score DESC",
                (taxon, self.orthoset),
            ).fetchall()

        return [tuple(row) for row in self._run("counting scores", select)]

    # Search ledger

    def mark_searched(
        self,
        query: str,
        target: str,
        stage: str,
        taxon: str,
        status: str = STATUS_OK,
        artifact: str = "",
        hits: int = 0,
    ) -> None:
        def upsert(con):
            con.execute(
                "INSERT OR REPLACE INTO searches (taxon, orthoset, stage, query, target, status, hits, artifact) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (taxon, self.orthoset, stage, query, target, status, hits, artifact),
            )

        with self._taxon_lock(taxon):
            self._run("updating search ledger", upsert)

    def search_status(self, query: str, target: str, stage: str, taxon: str) -> Optional[SearchRecord]:
        def select(con):
            return con.execute(
                "SELECT stage, query, target, status, hits, artifact FROM searches "
                "WHERE taxon = ? AND orthoset = ? AND stage = ? AND query = ? AND target = ?",
                (taxon, self.orthoset, stage, query, target),
            ).fetchone()

        row = self._run("reading search ledger", select)
        return SearchRecord(*row) if row else None

    def has_been_searched(self, query: str, target: str, stage: str, taxon: str) -> bool:
        record = self.search_status(query, target, stage, taxon)
        return record is not None and record.status == STATUS_OK
