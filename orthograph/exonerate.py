import subprocess
from tempfile import NamedTemporaryFile
from typing import Optional

from Bio.Seq import Seq
from msgspec import Struct

from .exceptions import SearchExecutionFailure
from .utils import gettempdir, writeFasta

RYO = ">%ti|%tcb/%tce|%s|%qab/%qae|%qi\n%tcs\n"


class ExonerateHit(Struct, frozen=True):
    target: str
    coding_start: int
    coding_end: int
    score: float
    query_start: int
    query_end: int
    query: str
    cdna: str

    @property
    def peptide(self) -> str:
        trimmed = self.cdna[: len(self.cdna) - len(self.cdna) % 3]
        return str(Seq(trimmed).translate()).replace("*", "X")


def parse_output(text: str) -> list[ExonerateHit]:
    hits = []
    header = None
    sequence = []
    for line in text.splitlines() + [">"]:
        if line.startswith(">"):
            if header is not None:
                target, coding_coords, score, query_coords, query = header.split("|", 4)
                coding_start, coding_end = map(int, coding_coords.split("/"))
                query_start, query_end = map(int, query_coords.split("/"))
                hits.append(
                    ExonerateHit(
                        target,
                        coding_start,
                        coding_end,
                        float(score),
                        query_start,
                        query_end,
                        query,
                        "".join(sequence),
                    )
                )
            header = line[1:].strip() or None
            sequence = []
        elif header is not None and line.strip().isalpha():
            sequence.append(line.strip())
    return hits


def align(
    reference: tuple[str, str],
    transcript: tuple[str, str],
    program: str = "exonerate",
    score: int = 50,
    timeout: Optional[float] = None,
) -> Optional[ExonerateHit]:
    """Align a reference peptide to a nucleotide transcript with protein2genome.

    Returns the best scoring alignment, or None if exonerate found nothing above
    the score threshold. The cdna of the hit is the frameshift corrected coding
    region of the transcript.
    """
    with NamedTemporaryFile(dir=gettempdir(), suffix=".fa") as query_file, NamedTemporaryFile(
        dir=gettempdir(), suffix=".fa"
    ) as target_file:
        writeFasta(query_file.name, [reference])
        writeFasta(target_file.name, [transcript])
        command = [
            program,
            "--model",
            "protein2genome",
            "--geneticcode",
            "1",
            "--score",
            str(score),
            "--ryo",
            RYO,
            "--showvulgar",
            "no",
            "--showalignment",
            "no",
            "--verbose",
            "0",
            query_file.name,
            target_file.name,
        ]
        try:
            p = subprocess.run(command, capture_output=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise SearchExecutionFailure(program, reference[0], f"timed out after {timeout}s") from e
        except OSError as e:
            raise SearchExecutionFailure(program, reference[0], str(e)) from e

    if p.returncode != 0:
        raise SearchExecutionFailure(
            program, reference[0], f"exit code {p.returncode}: {p.stderr.decode(errors='replace').strip()}"
        )

    hits = parse_output(p.stdout.decode())
    if not hits:
        return None
    return max(hits, key=lambda hit: hit.score)
