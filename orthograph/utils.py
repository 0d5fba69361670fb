import os
from collections.abc import Generator, Iterable
from queue import Queue
from threading import Thread

from isal import igzip as isal_gzip
from needletail import parse_fastx_file

# Last line of a finished search output. hmmsearch writes it itself.
COMPLETE_MARKER = "# [ok]"


class ConcurrentLogger(Thread):
    """printv for worker threads. Messages are printed in order by one daemon thread."""

    def __init__(self, inq: Queue) -> None:
        super().__init__(daemon=True)
        self.inq = inq

    def run(self):
        while True:
            message, verbosity, reqv = self.inq.get()
            printv(message, verbosity, reqv)
            self.inq.task_done()

    def __call__(self, msg: str, verbosity: int, reqv=1):
        self.inq.put((msg, verbosity, reqv))

    def flush(self):
        self.inq.join()


def printv(msg, verbosity, reqverb=1) -> None:
    if verbosity >= reqverb:
        print(msg)


def gettempdir():
    for shm in ("/run/shm", "/dev/shm"):
        if os.path.exists(shm):
            return shm
    return None


def parseFasta(path: str) -> Generator[tuple[str, str], None, None]:
    """Iterate over a fasta or fastq file, plain or gzipped, as (header, sequence) tuples.

    Headers are cut at the first space, interleaved sequences are joined.
    """
    for entry in parse_fastx_file(str(path)):
        yield entry.id.split(" ", 1)[0], entry.seq


def writeFasta(path: str, records: Iterable[tuple[str, str]], compress=False) -> str:
    """Write records to path, gzipped with a .gz suffix if compress. Returns the path written."""
    path = str(path)
    if compress:
        func = isal_gzip.open
        if not path.endswith(".gz"):
            path += ".gz"
    else:
        func = open
        if path.endswith(".gz"):
            path = path[: -len(".gz")]

    with func(path, "wb") as fp:
        fp.write("".join(f">{header}\n{sequence}\n" for header, sequence in records).encode())
    return path


def artifact_complete(path: str) -> bool:
    """True if the search output at path ends with the completion marker."""
    if not os.path.exists(path) or os.stat(path).st_size == 0:
        return False
    last = ""
    with open(path) as fp:
        for line in fp:
            if line.strip():
                last = line.strip()
    return last.startswith(COMPLETE_MARKER)


def seal_artifact(path: str) -> None:
    """Append the completion marker to an output written by a program that has none."""
    with open(path, "a") as fp:
        fp.write(f"{COMPLETE_MARKER}\n")
