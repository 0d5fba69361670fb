import math
from enum import Enum

from msgspec import Struct
from xxhash import xxh3_64

# log_evalue stored for an evalue of exactly 0.0; exp(-999) underflows back to 0.0
LOG_EVALUE_ZERO = -999.0


def log_evalue(evalue: float) -> float:
    if evalue == 0:
        return LOG_EVALUE_ZERO
    return math.log(evalue)


def evalue_from_log(value: float) -> float:
    if value <= LOG_EVALUE_ZERO:
        return 0.0
    return math.exp(value)


def digest(sequence: str) -> str:
    return xxh3_64(sequence.encode()).hexdigest()


def fragment_of(sequence: str, env_start: int, env_end: int) -> str:
    """Excise the 1-based inclusive envelope region of a translated transcript."""
    return sequence[env_start - 1 : env_end]


class SequencePair(Struct, frozen=True):
    peptide_id: str
    nucleotide_id: str


class Transcript(Struct, frozen=True):
    digest: str
    header: str
    sequence: str
    taxon: str
    nt_header: str = ""
    frame: int = 1


class HmmHit(Struct, frozen=True):
    query: str
    target: str
    taxon: str
    evalue: float
    score: float
    env_start: int
    env_end: int
    hmm_start: int = 0
    hmm_end: int = 0
    ali_start: int = 0
    ali_end: int = 0

    @property
    def log_evalue(self) -> float:
        return log_evalue(self.evalue)


class ReciprocalHit(Struct, frozen=True):
    query: str
    target: str
    taxon: str
    evalue: float
    score: float
    start: int
    end: int

    @property
    def log_evalue(self) -> float:
        return log_evalue(self.evalue)


class ConfirmingHit(ReciprocalHit, frozen=True):
    group: str = ""
    reference_taxon: str = ""


class CandidateState(str, Enum):
    HMM_HIT = "hmm_hit"
    RECIPROCAL_SEARCHED = "reciprocal_searched"
    RECIPROCAL_EVALUATED = "reciprocal_evaluated"
    ASSIGNED = "assigned"
    REJECTED = "rejected"
    SEARCH_FAILED = "search_failed"


class Candidate(Struct, frozen=True):
    group: str
    transcript: Transcript
    hit: HmmHit
    fragment: str
    sequence: str


class Decision(Struct, frozen=True):
    group: str
    transcript: str
    taxon: str
    state: CandidateState
    reason: str
    hit: HmmHit
    fragment: str = ""
    confirming_taxa: tuple[str, ...] = ()
    evidence: tuple[ConfirmingHit, ...] = ()


class AssignmentRecord(Struct, frozen=True):
    group: str
    transcript: str
    header: str
    taxon: str
    log_evalue: float
    hit: HmmHit
    fragment: str
    sequence: str
    reference_taxa: tuple[str, ...]
    evidence: tuple[ConfirmingHit, ...]
