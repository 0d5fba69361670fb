import os
import warnings
from collections.abc import Callable
from multiprocessing.pool import ThreadPool
from os import path
from typing import Optional

from Bio import BiopythonWarning
from Bio.Seq import Seq
from msgspec import json

from . import exonerate, rocky
from .aggregate import ResultAggregator
from .config import RunConfig, from_args
from .exceptions import ConfigurationError, ConnectivityError, SearchExecutionFailure
from .orthoset import ReferenceSet
from .reciprocal import ReciprocalMatcher
from .records import AssignmentRecord
from .store import HitStore, RetryPolicy
from .threshold import best_hit
from .timekeeper import KeeperMode, TimeKeeper
from .utils import printv, writeFasta


def nt_region(nt_sequence: str, frame: int, env_start: int, env_end: int) -> str:
    """Cut the codons behind a 1-based inclusive peptide envelope out of a transcript."""
    source = nt_sequence if frame > 0 else str(Seq(nt_sequence).reverse_complement())
    offset = abs(frame) - 1
    return source[offset + (env_start - 1) * 3 : offset + env_end * 3]


class GroupWriter:
    """Writes the peptide and nucleotide fasta of one ortholog group.

    The reference sequences of every confirming taxon come first, followed by
    the assigned transcripts in log evalue order.
    """

    def __init__(
        self,
        config: RunConfig,
        reference_set: ReferenceSet,
        store: HitStore,
        aggregator: ResultAggregator,
        reference_sequence: Callable[[str, str], Optional[str]],
        aligner: Callable = exonerate.align,
    ) -> None:
        self.config = config
        self.reference_set = reference_set
        self.store = store
        self.aggregator = aggregator
        self.reference_sequence = reference_sequence
        self.aligner = aligner
        self.aa_out = path.join(config.output_directory, "aa")
        self.nt_out = path.join(config.output_directory, "nt")

    def corrected(self, record: AssignmentRecord, nt_sequence: str) -> Optional[tuple[str, str]]:
        reference = best_hit(record.evidence, self.config.reciprocal_threshold)
        reference_aa = self.reference_sequence(reference.target, "aa")
        if not reference_aa:
            return None
        try:
            hit = self.aligner(
                (reference.target, reference_aa),
                (record.transcript, nt_sequence),
                program=self.config.exonerate_program,
                score=self.config.exonerate_score,
                timeout=self.config.search_timeout,
            )
        except SearchExecutionFailure as e:
            printv(f"WARNING: {e}", self.config.verbose, 1)
            return None
        if hit is None or not hit.cdna:
            return None
        return hit.peptide, hit.cdna

    def sequences(self, group_id: str) -> tuple[list, list, list[AssignmentRecord]]:
        records = list(self.aggregator.finalize_group(group_id).values())
        if not records:
            return [], [], []

        group = self.reference_set.groups[group_id]
        aa_out, nt_out = [], []
        taxa = sorted({taxon for record in records for taxon in record.reference_taxa})
        for taxon in taxa:
            pair = group.members[taxon]
            aa = self.reference_sequence(pair.peptide_id, "aa")
            if aa:
                aa_out.append((f"{group_id}|{taxon}|{pair.peptide_id}|.", aa))
            if pair.nucleotide_id:
                nt = self.reference_sequence(pair.nucleotide_id, "nt")
                if nt:
                    nt_out.append((f"{group_id}|{taxon}|{pair.nucleotide_id}|.", nt))

        for record in records:
            hit = record.hit
            header = f"{group_id}|{self.config.species}|{record.header}|{hit.env_start}-{hit.env_end}"
            transcript = self.store.transcript(record.transcript, self.config.species)
            nt_sequence = self.store.nt_sequence(transcript.nt_header, self.config.species)

            result = None
            if nt_sequence and self.config.frameshift_correction:
                result = self.corrected(record, nt_sequence)
            if result is None:
                result = (record.sequence, nt_region(nt_sequence, transcript.frame, hit.env_start, hit.env_end) if nt_sequence else "")

            aa_out.append((header, result[0]))
            if result[1]:
                nt_out.append((header, result[1]))
        return aa_out, nt_out, records

    def write(self, group_id: str) -> list[AssignmentRecord]:
        warnings.filterwarnings("ignore", category=BiopythonWarning)
        aa_out, nt_out, records = self.sequences(group_id)
        if records:
            printv(f"Writing {len(records)} sequences for {group_id}", self.config.verbose, 2)
            writeFasta(path.join(self.aa_out, f"{group_id}.aa.fa"), aa_out, self.config.compress)
            if nt_out:
                writeFasta(path.join(self.nt_out, f"{group_id}.nt.fa"), nt_out, self.config.compress)
        return records


def write_hitlist(aggregator: ResultAggregator, groups: list[str], out_path: str) -> None:
    """Assigned transcripts bucketed by log evalue, best bucket first."""
    hitlist = {
        f"{log_evalue:.4f}": {
            group: [record.transcript for record in records] for group, records in by_group.items()
        }
        for log_evalue, by_group in aggregator.hitlist(groups).items()
    }
    with open(out_path, "wb") as fp:
        fp.write(json.encode(hitlist))


def main(args):
    tk = TimeKeeper(KeeperMode.DIRECT)
    try:
        config = from_args(args)
        reference_set = rocky.load_reference_set(config.orthoset_input, config.orthoset)
        config.validate_against(reference_set)
    except ConfigurationError as e:
        printv(f"ERROR: {e}", args.verbose or 0, 0)
        return False

    if not path.exists(config.database_path):
        printv(f"ERROR: No search results at {config.database_path}. Run Search first.", config.verbose, 0)
        return False

    store = HitStore(
        config.database_path,
        reference_set,
        RetryPolicy(config.db_retry_interval, config.db_timeout),
    )
    aggregator = ResultAggregator(store, ReciprocalMatcher(reference_set, config), config.species)
    orthoset_db = rocky.get_rock("orthoset")
    writer = GroupWriter(
        config,
        reference_set,
        store,
        aggregator,
        lambda peptide_id, kind: rocky.reference_sequence(orthoset_db, peptide_id, kind),
    )
    os.makedirs(writer.aa_out, exist_ok=True)
    os.makedirs(writer.nt_out, exist_ok=True)

    try:
        groups = store.groups_with_hits(config.species)
        printv(f"Reporting {len(groups)} groups with hits", config.verbose)
        with ThreadPool(config.workers) as pool:
            results = pool.map(writer.write, groups)
        assignments = {group: records for group, records in zip(groups, results) if records}
        write_hitlist(aggregator, list(assignments), path.join(config.output_directory, "hitlist.json"))
    except ConnectivityError as e:
        printv(f"ERROR: {e}", config.verbose, 0)
        return False

    with open(path.join(config.output_directory, "assignments.json"), "wb") as fp:
        fp.write(json.encode(assignments))

    printv(
        f"Wrote {sum(len(i) for i in assignments.values())} sequences in {len(assignments)} groups. "
        f"Took {tk.differential():.2f}s",
        config.verbose,
        0,
    )
    return True
