"""Reciprocal best-hit decisions.

A transcript that an ortholog group's HMM picked up becomes a candidate. Its
envelope fragment is searched against all reference proteomes, and the
candidate is assigned to the group when enough reference taxa of that group
are hit back:

    strict  every considered reference taxon confirms the group
    soft    at most soft_threshold considered taxa fail to confirm

Both rules need at least one confirming hit.
"""
from collections.abc import Iterable
from typing import Optional

from msgspec import structs

from .config import RunConfig
from .orthoset import ReferenceSet
from .records import (
    Candidate,
    CandidateState,
    ConfirmingHit,
    Decision,
    HmmHit,
    ReciprocalHit,
    Transcript,
    digest,
    fragment_of,
)
from .store import STATUS_FAILED, SearchRecord
from .threshold import accepts_hit, best_hit, filter_hits


class ReciprocalMatcher:
    def __init__(self, reference_set: ReferenceSet, config: RunConfig) -> None:
        self.reference_set = reference_set
        self.config = config
        self.considered_taxa = config.considered_taxa(reference_set.taxa)

    def candidates(
        self, hits: Iterable[HmmHit], transcripts: dict[str, Transcript]
    ) -> list[Candidate]:
        """Turn raw HMM hits into candidates, one per (group, transcript).

        Hits failing the HMM threshold are dropped, the best remaining domain of
        each transcript is kept and its envelope is excised. Fragments shorter
        than min_fragment_length are dropped.
        """
        passing = {}
        for hit in filter_hits(hits, self.config.hmm_threshold):
            passing.setdefault((hit.query, hit.target), []).append(hit)

        result = []
        for (group, target), group_hits in sorted(passing.items()):
            transcript = transcripts.get(target)
            if transcript is None:
                continue
            hit = best_hit(group_hits, self.config.hmm_threshold)
            sequence = fragment_of(transcript.sequence, hit.env_start, hit.env_end)
            if len(sequence) < self.config.min_fragment_length:
                continue
            result.append(Candidate(group, transcript, hit, digest(sequence), sequence))
        return result

    def confirming_hits(self, group: str, hits: Iterable[ReciprocalHit]) -> list[ConfirmingHit]:
        """Accepted reciprocal hits whose reference target belongs to group."""
        considered = set(self.considered_taxa)
        confirming = []
        for hit in hits:
            if not accepts_hit(hit, self.config.reciprocal_threshold):
                continue
            target = self.reference_set.lookup(hit.target)
            if target is None or target.group != group or target.taxon not in considered:
                continue
            confirming.append(
                ConfirmingHit(
                    hit.query,
                    hit.target,
                    hit.taxon,
                    hit.evalue,
                    hit.score,
                    hit.start,
                    hit.end,
                    group=target.group,
                    reference_taxon=target.taxon,
                )
            )
        return confirming

    def coverage_met(self, confirming_taxa: set) -> bool:
        if not confirming_taxa:
            return False
        missing = len(set(self.considered_taxa) - confirming_taxa)
        if self.config.coverage.strict:
            return missing == 0
        return missing <= self.config.coverage.soft_threshold

    def screen(self, candidate: Candidate, hits: Iterable[ReciprocalHit]) -> Decision:
        """Threshold the reciprocal hits of a searched candidate, before coverage is applied."""
        evidence = self.confirming_hits(candidate.group, hits)
        confirming_taxa = tuple(sorted({hit.reference_taxon for hit in evidence}))
        return Decision(
            group=candidate.group,
            transcript=candidate.transcript.digest,
            taxon=candidate.transcript.taxon,
            state=CandidateState.RECIPROCAL_EVALUATED,
            reason=f"{len(confirming_taxa)}/{len(self.considered_taxa)} reference taxa confirm",
            hit=candidate.hit,
            fragment=candidate.fragment,
            confirming_taxa=confirming_taxa,
            evidence=tuple(evidence),
        )

    def apply_coverage(self, decision: Decision) -> Decision:
        """Move an evaluated decision to ASSIGNED or REJECTED."""
        if decision.state is not CandidateState.RECIPROCAL_EVALUATED:
            raise ValueError(f"Cannot apply coverage to a {decision.state.value} decision")
        if self.coverage_met(set(decision.confirming_taxa)):
            return structs.replace(decision, state=CandidateState.ASSIGNED)
        if not decision.evidence:
            reason = "no accepted reciprocal hit in group"
        else:
            reason = f"only {decision.reason} ({self.config.coverage.mode} coverage)"
        return structs.replace(decision, state=CandidateState.REJECTED, reason=reason)

    def evaluate(
        self,
        candidate: Candidate,
        hits: Iterable[ReciprocalHit],
        search: Optional[SearchRecord] = None,
    ) -> Decision:
        def decide(state, reason):
            return Decision(
                group=candidate.group,
                transcript=candidate.transcript.digest,
                taxon=candidate.transcript.taxon,
                state=state,
                reason=reason,
                hit=candidate.hit,
                fragment=candidate.fragment,
            )

        if search is None:
            return decide(CandidateState.HMM_HIT, "reciprocal search pending")
        if search.status == STATUS_FAILED:
            return decide(CandidateState.SEARCH_FAILED, "reciprocal search failed")
        return self.apply_coverage(self.screen(candidate, hits))
