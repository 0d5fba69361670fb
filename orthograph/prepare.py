import warnings
from collections.abc import Generator
from os import path

from Bio import BiopythonWarning
from Bio.Seq import Seq
from tqdm import tqdm
from xxhash import xxh3_64

from .records import Transcript, digest
from .store import HitStore
from .utils import parseFasta, printv, writeFasta

FRAMES = (1, 2, 3, -1, -2, -3)


def translate_frame(sequence: str, frame: int, reverse: str = None) -> str:
    """Translate one of the six reading frames. Stop codons become X."""
    if frame < 0:
        source = reverse if reverse is not None else str(Seq(sequence).reverse_complement())
    else:
        source = sequence
    offset = abs(frame) - 1
    usable = source[offset:]
    usable = usable[: len(usable) - len(usable) % 3]
    return str(Seq(usable).translate()).replace("*", "X")


def six_frames(sequence: str) -> Generator[tuple[int, str], None, None]:
    reverse = str(Seq(sequence).reverse_complement())
    for frame in FRAMES:
        yield frame, translate_frame(sequence, frame, reverse)


class TranscriptLoader:
    """Reads nucleotide transcripts and yields their six frame translations.

    Exact duplicates and reverse complement duplicates are skipped, the first
    header seen is kept.
    """

    def __init__(self, taxon: str, minimum_sequence_length: int, verbose: int) -> None:
        self.taxon = taxon
        self.minimum_sequence_length = minimum_sequence_length
        self.verbose = verbose
        self.seen = set()
        self.duplicates = 0
        self.nt_records = []

    def __call__(self, fa_file_path: str) -> Generator[Transcript, None, None]:
        warnings.filterwarnings("ignore", category=BiopythonWarning)
        records = parseFasta(fa_file_path)
        if self.verbose > 1:
            records = tqdm(records, desc=path.basename(fa_file_path))

        for raw_header, sequence in records:
            header = raw_header.replace("|", "_")
            sequence = sequence.upper()
            if len(sequence) < self.minimum_sequence_length:
                continue

            seq_hash = xxh3_64(sequence.encode()).hexdigest()
            if seq_hash in self.seen:
                self.duplicates += 1
                continue
            rev_hash = xxh3_64(str(Seq(sequence).reverse_complement()).encode()).hexdigest()
            if rev_hash in self.seen:
                self.duplicates += 1
                continue
            self.seen.add(seq_hash)
            self.nt_records.append((header, sequence))

            for frame, peptide in six_frames(sequence):
                if not peptide:
                    continue
                yield Transcript(
                    digest=digest(peptide),
                    header=f"{header}|{frame}",
                    sequence=peptide,
                    taxon=self.taxon,
                    nt_header=header,
                    frame=frame,
                )


def load_transcripts(
    store: HitStore,
    taxon: str,
    inputs: list[str],
    minimum_sequence_length: int = 30,
    verbose: int = 0,
) -> int:
    loader = TranscriptLoader(taxon, minimum_sequence_length, verbose)
    count = 0
    for fa_file_path in inputs:
        printv(f"Translating {fa_file_path}", verbose, 1)
        count += store.add_transcripts(loader(fa_file_path))
    store.add_nt_sequences(taxon, loader.nt_records)
    printv(
        f"Stored {count} translated frames of {len(loader.nt_records)} transcripts, "
        f"skipped {loader.duplicates} duplicates",
        verbose,
        1,
    )
    return count


def write_protfile(store: HitStore, taxon: str, prot_path: str) -> str:
    """Write the translated transcripts of taxon with their digests as headers."""
    return writeFasta(
        prot_path,
        [(transcript.digest, transcript.sequence) for transcript in store.transcripts(taxon)],
    )
