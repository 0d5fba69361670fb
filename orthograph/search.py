import os
from collections.abc import Callable
from multiprocessing.pool import ThreadPool
from os import path
from queue import Queue
from typing import Optional

from msgspec import Struct
from tqdm import tqdm

from . import diamond, hmmsearch, rocky
from .aggregate import FINAL_STATES, ResultAggregator
from .cache import SearchCache
from .config import RunConfig, from_args
from .exceptions import (
    ConfigurationError,
    ConnectivityError,
    ReferentialIntegrityError,
    SearchExecutionFailure,
)
from .orthoset import ReferenceSet
from .prepare import load_transcripts, write_protfile
from .reciprocal import ReciprocalMatcher
from .records import Candidate, CandidateState, HmmHit, ReciprocalHit
from .store import HitStore, RetryPolicy
from .timekeeper import KeeperMode, TimeKeeper
from .utils import ConcurrentLogger, printv

HmmRunner = Callable[[str, str], list[HmmHit]]
ReciprocalRunner = Callable[[str, str, str], list[ReciprocalHit]]


class GroupReport(Struct):
    group: str
    hmm_failed: bool = False
    hits: int = 0
    candidates: int = 0
    assigned: int = 0
    rejected: int = 0
    search_failed: int = 0


class SearchPipeline:
    """Runs the HMM then reciprocal search of every ortholog group as one task per group.

    Runners are injectable. hmm_runner(group_id, out_path) returns the HMM
    hits of a group and reciprocal_runner(fragment_digest, sequence, out_path)
    the reciprocal hits of one fragment. Both raise SearchExecutionFailure.
    """

    def __init__(
        self,
        config: RunConfig,
        reference_set: ReferenceSet,
        store: HitStore,
        hmm_runner: Optional[HmmRunner] = None,
        reciprocal_runner: Optional[ReciprocalRunner] = None,
        log: Optional[Callable] = None,
    ) -> None:
        self.config = config
        self.taxon = config.species
        self.reference_set = reference_set
        self.store = store
        self.matcher = ReciprocalMatcher(reference_set, config)
        self.cache = SearchCache(
            store,
            self.taxon,
            {hmmsearch.STAGE: hmmsearch.valid_domtbl, diamond.STAGE: diamond.valid_output},
        )
        self.aggregator = ResultAggregator(store, self.matcher, self.taxon)
        self.hmm_runner = hmm_runner or self.run_hmmsearch
        self.reciprocal_runner = reciprocal_runner or self.run_reciprocal
        self.log = log or printv
        self.hmm_dir = path.join(config.output_directory, "hmmsearch")
        self.reciprocal_dir = path.join(config.output_directory, "reciprocal")
        self.prot_file = path.join(config.output_directory, f"{self.taxon}.prot.fa")
        self.transcripts = {}

    def run_hmmsearch(self, group_id: str, out_path: str) -> list[HmmHit]:
        return hmmsearch.search(
            self.reference_set.hmm_file(group_id),
            self.prot_file,
            out_path,
            self.taxon,
            self.config.hmm_threshold,
            program=self.config.hmmsearch_program,
            timeout=self.config.search_timeout,
        )

    def run_reciprocal(self, query: str, sequence: str, out_path: str) -> list[ReciprocalHit]:
        return diamond.search(
            query,
            sequence,
            self.reference_set.search_index,
            out_path,
            self.taxon,
            program=self.config.reciprocal_program,
            max_hits=self.config.max_reciprocal_hits,
            timeout=self.config.search_timeout,
        )

    def search_hmm(self, group_id: str) -> bool:
        out_path = path.join(self.hmm_dir, f"{group_id}.domtbl")
        with self.cache.claim(group_id, self.taxon, hmmsearch.STAGE) as must_run:
            if not must_run:
                self.log(f"Found existing hmmsearch result for {group_id}", self.config.verbose, 3)
                return True
            try:
                hits = self.hmm_runner(group_id, out_path)
            except SearchExecutionFailure as e:
                self.log(f"WARNING: {e}", self.config.verbose, 0)
                self.cache.record_failure(group_id, self.taxon, hmmsearch.STAGE, out_path)
                return False

            for error in self.store.record_hmm_hits(hits):
                self.log(f"WARNING: {error}", self.config.verbose, 1)
            self.cache.record_success(group_id, self.taxon, hmmsearch.STAGE, out_path, len(hits))
        return True

    def search_candidate(self, candidate: Candidate) -> CandidateState:
        """Reciprocal search of one candidate fragment, skipped if already done."""
        out_path = path.join(self.reciprocal_dir, f"{candidate.fragment}.tsv")
        with self.cache.claim(
            candidate.fragment, self.reference_set.name, diamond.STAGE
        ) as must_run:
            if not must_run:
                return CandidateState.RECIPROCAL_SEARCHED
            try:
                hits = self.reciprocal_runner(candidate.fragment, candidate.sequence, out_path)
                self.store.record_reciprocal_hits(hits)
            except (SearchExecutionFailure, ReferentialIntegrityError) as e:
                self.log(f"WARNING: {candidate.group} {candidate.transcript.header}: {e}", self.config.verbose, 0)
                self.cache.record_failure(candidate.fragment, self.reference_set.name, diamond.STAGE, out_path)
                return CandidateState.SEARCH_FAILED

            self.cache.record_success(
                candidate.fragment, self.reference_set.name, diamond.STAGE, out_path, len(hits)
            )
        return CandidateState.RECIPROCAL_SEARCHED

    def search_group(self, group_id: str) -> GroupReport:
        tk = TimeKeeper(KeeperMode.DIRECT)
        if not self.search_hmm(group_id):
            return GroupReport(group_id, hmm_failed=True)

        hits = self.store.hits_for_group(group_id, self.taxon)
        candidates = self.matcher.candidates(hits, self.transcripts)
        for candidate in candidates:
            state = self.search_candidate(candidate)
            self.log(f"{group_id} {candidate.transcript.header}: {state.value}", self.config.verbose, 3)

        counts = self.aggregator.summarize([group_id])[group_id]
        report = GroupReport(
            group_id,
            hits=len(hits),
            candidates=len(candidates),
            assigned=counts[CandidateState.ASSIGNED],
            rejected=counts[CandidateState.REJECTED],
            search_failed=counts[CandidateState.SEARCH_FAILED],
        )

        self.log(
            f"{group_id}: {report.assigned} assigned, {report.rejected} rejected, "
            f"{report.search_failed} failed. Took {tk.lap():.2f}s",
            self.config.verbose,
            2,
        )
        return report

    def run(self, groups: Optional[list[str]] = None) -> list[GroupReport]:
        groups = sorted(groups or self.reference_set.groups)
        os.makedirs(self.hmm_dir, exist_ok=True)
        os.makedirs(self.reciprocal_dir, exist_ok=True)

        self.transcripts = {t.digest: t for t in self.store.transcripts(self.taxon)}
        write_protfile(self.store, self.taxon, self.prot_file)

        with ThreadPool(self.config.workers) as pool:
            futures = [pool.apply_async(self.search_group, (group,)) for group in groups]
            if self.config.verbose:
                futures = tqdm(futures, desc="Groups")
            # get() re-raises a worker's ConnectivityError and leaving the block terminates the pool
            reports = [future.get() for future in futures]
        return reports


def write_summary(reports: list[GroupReport], out_path: str) -> None:
    with open(out_path, "w") as fp:
        fp.write("Group,Assigned,Rejected,Search failed,Hmmsearch failed\n")
        for report in reports:
            fp.write(
                f"{report.group},{report.assigned},{report.rejected},{report.search_failed},{report.hmm_failed}\n"
            )


def hit_statistics(store: HitStore, taxon: str) -> str:
    """One line describing the HMM hits recorded for a taxon."""
    transcripts = store.hit_transcripts(taxon)
    log_evalues = store.log_evalue_counts(taxon)
    scores = store.score_counts(taxon)
    if not log_evalues:
        return f"No HMM hits for {taxon}"
    hits = sum(count for _, count in log_evalues)
    return (
        f"{hits} HMM hits on {len(transcripts)} transcripts, "
        f"log evalues {log_evalues[0][0]:.2f} to {log_evalues[-1][0]:.2f}, "
        f"scores {scores[0][0]:.1f} to {scores[-1][0]:.1f}"
    )


def input_error(inputs: list[str]) -> Optional[str]:
    """Why the transcript files cannot be loaded, or None if they can."""
    if not inputs:
        return "No transcript files given. Pass at least one fasta file or --continue a previous run."
    missing = [i for i in inputs if not path.exists(i)]
    if missing:
        return f"Transcript files not found: {', '.join(missing)}"
    return None


def main(args):
    global_time_keeper = TimeKeeper(KeeperMode.DIRECT)
    try:
        config = from_args(args)
        reference_set = rocky.load_reference_set(config.orthoset_input, config.orthoset)
        config.validate_against(reference_set)
    except ConfigurationError as e:
        printv(f"ERROR: {e}", args.verbose or 0, 0)
        return False

    inputs = args.INPUT or []
    error = None if config.continue_run else input_error(inputs)
    if error:
        printv(f"ERROR: {error}", config.verbose, 0)
        return False

    os.makedirs(config.output_directory, exist_ok=True)
    store = HitStore(
        config.database_path,
        reference_set,
        RetryPolicy(config.db_retry_interval, config.db_timeout),
    )
    logger = ConcurrentLogger(Queue())
    logger.start()

    try:
        store.initialize()
        if not config.continue_run or not store.transcripts(config.species):
            error = input_error(inputs)
            if error:
                printv(f"ERROR: Nothing to continue for {config.species}. {error}", config.verbose, 0)
                return False
            printv(f"Clearing previous results of {config.species}", config.verbose)
            store.clear(config.species)
            load_transcripts(
                store, config.species, inputs, config.min_fragment_length, config.verbose
            )
        printv(
            f"Searching {len(reference_set.groups)} groups. Elapsed: {global_time_keeper.differential():.2f}s",
            config.verbose,
        )
        pipeline = SearchPipeline(config, reference_set, store, log=logger)
        reports = pipeline.run()
        printv(hit_statistics(store, config.species), config.verbose, 1)
    except ConnectivityError as e:
        printv(f"ERROR: {e}", config.verbose, 0)
        return False
    finally:
        logger.flush()

    write_summary(reports, path.join(config.output_directory, "summary.csv"))
    totals = {state: 0 for state in FINAL_STATES}
    for report in reports:
        totals[CandidateState.ASSIGNED] += report.assigned
        totals[CandidateState.REJECTED] += report.rejected
        totals[CandidateState.SEARCH_FAILED] += report.search_failed
    failed_groups = sum(report.hmm_failed for report in reports)
    printv(
        f"{totals[CandidateState.ASSIGNED]} assigned, {totals[CandidateState.REJECTED]} rejected, "
        f"{totals[CandidateState.SEARCH_FAILED]} failed searches, {failed_groups} failed groups",
        config.verbose,
        0,
    )
    printv(f"Done! Took {global_time_keeper.differential():.2f}s overall.", config.verbose, 0)
    return True
