import subprocess
from os import path, remove, replace
from typing import Optional

from numpy import float32, float64, uint32
from pandas import read_csv
from pandas.errors import EmptyDataError, ParserError

from .exceptions import SearchExecutionFailure
from .records import ReciprocalHit
from .utils import artifact_complete, seal_artifact, writeFasta

STAGE = "reciprocal"

OUTFMT = ["qseqid", "sseqid", "evalue", "bitscore", "sstart", "send"]


def parse_csv(out_path: str):
    names = ["query", "target", "evalue", "score", "start", "end"]
    dtype = {
        "query": str,
        "target": str,
        "evalue": float64,
        "score": float32,
        "start": uint32,
        "end": uint32,
    }
    try:
        return read_csv(
            out_path,
            delimiter="\t",
            header=None,
            names=names,
            dtype=dtype,
            comment="#",
        )
    except EmptyDataError:
        return None


def get_hits(out_path: str, taxon: str) -> list[ReciprocalHit]:
    df = parse_csv(out_path)
    if df is None:
        return []
    return [
        ReciprocalHit(
            query=row.query,
            target=row.target,
            taxon=taxon,
            evalue=float(row.evalue),
            score=float(row.score),
            start=int(row.start),
            end=int(row.end),
        )
        for row in df.itertuples(index=False)
    ]


def valid_output(out_path: str) -> bool:
    if not artifact_complete(out_path):
        return False
    try:
        parse_csv(out_path)
    except (ParserError, ValueError):
        return False
    return True


def search(
    query: str,
    sequence: str,
    db_path: str,
    out_path: str,
    taxon: str,
    program: str = "diamond",
    max_hits: int = 10,
    threads: int = 1,
    timeout: Optional[float] = None,
) -> list[ReciprocalHit]:
    """Search one candidate fragment against the reference proteomes.

    The output is only kept, and sealed with the completion marker, after a
    clean exit. An empty table after a clean exit means no hits.
    """
    query_file = out_path + ".fa"
    partial = out_path + ".partial"
    writeFasta(query_file, [(query, sequence)])
    command = [
        program,
        "blastp",
        "-d",
        db_path,
        "-q",
        query_file,
        "-o",
        partial,
        "--outfmt",
        "6",
        *OUTFMT,
        "--max-target-seqs",
        str(max_hits),
        "--threads",
        str(threads),
        "--quiet",
    ]
    try:
        p = subprocess.run(
            command, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        raise SearchExecutionFailure(program, query, f"timed out after {timeout}s") from e
    except OSError as e:
        raise SearchExecutionFailure(program, query, str(e)) from e
    finally:
        if path.exists(query_file):
            remove(query_file)

    if p.returncode != 0:
        if path.exists(partial):
            remove(partial)
        raise SearchExecutionFailure(
            program, query, f"exit code {p.returncode}: {p.stderr.decode(errors='replace').strip()}"
        )
    if not path.exists(partial):
        raise SearchExecutionFailure(program, query, "no output produced")

    seal_artifact(partial)
    replace(partial, out_path)
    try:
        return get_hits(out_path, taxon)
    except (ParserError, ValueError) as e:
        raise SearchExecutionFailure(program, query, str(e)) from e
