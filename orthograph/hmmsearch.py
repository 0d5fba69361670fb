import subprocess
from os import path, remove, replace
from typing import Optional

from .config import ThresholdConfig
from .exceptions import SearchExecutionFailure
from .records import HmmHit
from .utils import artifact_complete

STAGE = "hmmsearch"


def parse_domtbl_fields(fields: list, taxon: str) -> HmmHit:
    return HmmHit(
        query=fields[3],
        target=fields[0],
        taxon=taxon,
        evalue=float(fields[12]),
        score=float(fields[13]),
        hmm_start=int(fields[15]),
        hmm_end=int(fields[16]),
        ali_start=int(fields[17]),
        ali_end=int(fields[18]),
        env_start=int(fields[19]),
        env_end=int(fields[20]),
    )


def get_hits_from_domtbl(domtbl_path: str, taxon: str) -> list[HmmHit]:
    """Read every domain row of a domtblout file. Duplicate rows are read once."""
    hits = []
    seen = set()
    with open(domtbl_path) as f:
        for line in f:
            if not line.strip() or line[0] == "#":
                continue
            if line in seen:
                continue
            seen.add(line)
            fields = line.split()
            if len(fields) < 21:
                raise ValueError(f"Truncated domtbl row in {domtbl_path}: {line.strip()}")
            hits.append(parse_domtbl_fields(fields, taxon))
    return hits


def valid_domtbl(domtbl_path: str) -> bool:
    if not artifact_complete(domtbl_path):
        return False
    try:
        get_hits_from_domtbl(domtbl_path, "")
    except ValueError:
        return False
    return True


def threshold_option(threshold: ThresholdConfig) -> list[str]:
    if threshold.evalue_max is not None:
        return ["-E", str(threshold.evalue_max)]
    return ["-T", str(threshold.score_min)]


def search(
    hmm_file: str,
    prot_file: str,
    domtbl_path: str,
    taxon: str,
    threshold: ThresholdConfig,
    program: str = "hmmsearch",
    threads: int = 1,
    timeout: Optional[float] = None,
) -> list[HmmHit]:
    """Run hmmsearch for one profile against the translated transcripts.

    A domtbl without data rows is a valid result with no hits. A non-zero exit,
    a timeout or an output without the completion footer raise
    SearchExecutionFailure.

    Args:
    ----
        hmm_file (str): Profile of the ortholog group.
        prot_file (str): Fasta of translated transcripts keyed by digest.
        domtbl_path (str): Where the domain table is written.
        taxon (str): Species the transcripts belong to.
        threshold (ThresholdConfig): Reporting threshold passed on to hmmsearch.
    Returns:
    -------
        list[HmmHit]: One hit per domain row.
    """
    query = path.basename(hmm_file)
    partial = domtbl_path + ".partial"
    command = [
        program,
        "--domtblout",
        partial,
        *threshold_option(threshold),
        "--cpu",
        str(threads),
        hmm_file,
        prot_file,
    ]
    try:
        p = subprocess.run(
            command, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        raise SearchExecutionFailure(program, query, f"timed out after {timeout}s") from e
    except OSError as e:
        raise SearchExecutionFailure(program, query, str(e)) from e

    if p.returncode != 0:
        if path.exists(partial):
            remove(partial)
        raise SearchExecutionFailure(
            program, query, f"exit code {p.returncode}: {p.stderr.decode(errors='replace').strip()}"
        )
    if not artifact_complete(partial):
        raise SearchExecutionFailure(program, query, "no output produced")

    replace(partial, domtbl_path)
    try:
        return get_hits_from_domtbl(domtbl_path, taxon)
    except ValueError as e:
        raise SearchExecutionFailure(program, query, str(e)) from e
