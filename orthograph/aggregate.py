from collections import Counter, defaultdict
from collections.abc import Iterable

from .diamond import STAGE as RECIPROCAL_STAGE
from .reciprocal import ReciprocalMatcher
from .records import AssignmentRecord, CandidateState, Decision, fragment_of
from .store import HitStore

FINAL_STATES = (CandidateState.ASSIGNED, CandidateState.REJECTED, CandidateState.SEARCH_FAILED)


class ResultAggregator:
    """Rebuilds decisions from the hit store alone, so the same store always yields the same result."""

    def __init__(self, store: HitStore, matcher: ReciprocalMatcher, taxon: str) -> None:
        self.store = store
        self.matcher = matcher
        self.taxon = taxon

    def decisions(self, group_id: str) -> list[Decision]:
        hits = self.store.hits_for_group(group_id, self.taxon)
        transcripts = {}
        for target in {hit.target for hit in hits}:
            transcript = self.store.transcript(target, self.taxon)
            if transcript is not None:
                transcripts[target] = transcript

        result = []
        for candidate in self.matcher.candidates(hits, transcripts):
            search = self.store.search_status(
                candidate.fragment, self.store.orthoset, RECIPROCAL_STAGE, self.taxon
            )
            reciprocal_hits = []
            if search is not None:
                reciprocal_hits = self.store.reciprocal_hits_for(candidate.fragment, self.taxon)
            result.append(self.matcher.evaluate(candidate, reciprocal_hits, search))
        return result

    def finalize_group(self, group_id: str) -> dict[str, AssignmentRecord]:
        """Assigned transcripts of a group keyed by digest, best log evalue first, ties by digest."""
        records = []
        for decision in self.decisions(group_id):
            if decision.state is not CandidateState.ASSIGNED:
                continue
            transcript = self.store.transcript(decision.transcript, self.taxon)
            records.append(
                AssignmentRecord(
                    group=group_id,
                    transcript=decision.transcript,
                    header=transcript.header,
                    taxon=self.taxon,
                    log_evalue=decision.hit.log_evalue,
                    hit=decision.hit,
                    fragment=decision.fragment,
                    sequence=fragment_of(transcript.sequence, decision.hit.env_start, decision.hit.env_end),
                    reference_taxa=decision.confirming_taxa,
                    evidence=decision.evidence,
                )
            )
        records.sort(key=lambda record: (record.log_evalue, record.transcript))
        return {record.transcript: record for record in records}

    def summarize(self, groups: Iterable[str]) -> dict[str, Counter]:
        summary = {}
        for group_id in groups:
            counts = Counter({state: 0 for state in FINAL_STATES})
            for decision in self.decisions(group_id):
                if decision.state in FINAL_STATES:
                    counts[decision.state] += 1
            summary[group_id] = counts
        return summary

    def hitlist(self, groups: Iterable[str]) -> dict[float, dict[str, list[AssignmentRecord]]]:
        """Assigned records bucketed by log evalue, then by group, best bucket first."""
        buckets = defaultdict(lambda: defaultdict(list))
        for group_id in groups:
            for record in self.finalize_group(group_id).values():
                buckets[record.log_evalue][group_id].append(record)
        return {
            log_evalue: {group: buckets[log_evalue][group] for group in sorted(buckets[log_evalue])}
            for log_evalue in sorted(buckets)
        }
