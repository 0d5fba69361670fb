import sqlite3

import pytest

from conftest import SPECIES, NoSleep, make_transcript
from orthograph.exceptions import ConnectivityError, ReferentialIntegrityError
from orthograph.records import HmmHit, ReciprocalHit, Transcript, digest, fragment_of
from orthograph.store import STATUS_FAILED, HitStore, RetryPolicy


def hmm_hit(target="abc123", query="EOG001", evalue=1e-20, env_start=1, env_end=20, taxon=SPECIES):
    return HmmHit(query, target, taxon, evalue, 80.0, env_start, env_end)


def test_transcripts_round_trip(store):
    transcript = make_transcript("abc123")
    assert store.add_transcripts([transcript]) == 1
    assert store.transcript("abc123", SPECIES) == transcript
    assert store.transcript("missing", SPECIES) is None
    assert store.transcripts(SPECIES) == [transcript]


def test_hmm_hit_needs_known_transcript(store):
    with pytest.raises(ReferentialIntegrityError):
        store.record_hmm_hit(hmm_hit())


def test_hmm_hit_needs_known_group(store):
    store.add_transcripts([make_transcript("abc123")])
    with pytest.raises(ReferentialIntegrityError):
        store.record_hmm_hit(hmm_hit(query="EOG999"))


def test_hmm_hits_record_fragment_digest(store):
    transcript = make_transcript("abc123")
    store.add_transcripts([transcript])
    fragment = store.record_hmm_hit(hmm_hit(env_start=3, env_end=12))
    assert fragment == digest(fragment_of(transcript.sequence, 3, 12))


def test_multiple_domains_per_pair(store):
    store.add_transcripts([make_transcript("abc123"), make_transcript("def456")])
    errors = store.record_hmm_hits(
        [
            hmm_hit(evalue=1e-5, env_start=1, env_end=10),
            hmm_hit(evalue=1e-30, env_start=12, env_end=24),
            hmm_hit(target="def456", evalue=0.0),
            hmm_hit(target="unknown"),
        ]
    )
    assert len(errors) == 1
    assert isinstance(errors[0], ReferentialIntegrityError)

    hits = store.hits_for_group("EOG001", SPECIES)
    assert [(hit.target, hit.evalue) for hit in hits] == [
        ("def456", 0.0),
        ("abc123", 1e-30),
        ("abc123", 1e-5),
    ]
    assert store.log_evalue_counts(SPECIES)[0] == (-999.0, 1)
    assert store.hits_for_group("EOG002", SPECIES) == []


def test_replayed_hits_are_not_duplicated(store):
    store.add_transcripts([make_transcript("abc123")])
    store.record_hmm_hit(hmm_hit())
    store.record_hmm_hit(hmm_hit())
    assert len(store.hits_for_group("EOG001", SPECIES)) == 1


def test_reciprocal_hit_needs_recorded_fragment(store):
    with pytest.raises(ReferentialIntegrityError):
        store.record_reciprocal_hit(
            ReciprocalHit("nofragment", "EOG001|T1|p1", SPECIES, 1e-30, 120.0, 1, 20)
        )


def test_reciprocal_hits_for_fragment(store):
    store.add_transcripts([make_transcript("abc123")])
    fragment = store.record_hmm_hit(hmm_hit())
    store.record_reciprocal_hits(
        [
            ReciprocalHit(fragment, "EOG001|T1|p1", SPECIES, 1e-25, 100.0, 1, 20),
            ReciprocalHit(fragment, "EOG001|T3|p1", SPECIES, 1e-30, 120.0, 1, 20),
        ]
    )
    hits = store.reciprocal_hits_for(fragment, SPECIES)
    assert [hit.target for hit in hits] == ["EOG001|T3|p1", "EOG001|T1|p1"]


def test_search_ledger(store):
    assert not store.has_been_searched("EOG001", SPECIES, "hmmsearch", SPECIES)
    store.mark_searched("EOG001", SPECIES, "hmmsearch", SPECIES, status=STATUS_FAILED)
    assert not store.has_been_searched("EOG001", SPECIES, "hmmsearch", SPECIES)
    store.mark_searched("EOG001", SPECIES, "hmmsearch", SPECIES, artifact="x.domtbl", hits=3)
    assert store.has_been_searched("EOG001", SPECIES, "hmmsearch", SPECIES)
    record = store.search_status("EOG001", SPECIES, "hmmsearch", SPECIES)
    assert record.hits == 3
    assert record.artifact == "x.domtbl"


def test_clear_only_touches_its_taxon(store):
    other = Transcript("abc123", "contig|1", make_transcript("abc123").sequence, "Other", "contig", 1)
    store.add_transcripts([make_transcript("abc123"), other])
    store.record_hmm_hit(hmm_hit())
    store.record_hmm_hit(hmm_hit(taxon="Other"))
    store.mark_searched("EOG001", SPECIES, "hmmsearch", SPECIES)

    store.clear(SPECIES)

    assert store.transcripts(SPECIES) == []
    assert store.hits_for_group("EOG001", SPECIES) == []
    assert store.search_status("EOG001", SPECIES, "hmmsearch", SPECIES) is None
    assert len(store.hits_for_group("EOG001", "Other")) == 1


def test_nt_sequences(store):
    store.add_nt_sequences(SPECIES, [("contig", "ATGAAA")])
    assert store.nt_sequence("contig", SPECIES) == "ATGAAA"
    assert store.nt_sequence("nothing", SPECIES) is None


def test_retry_gives_up_after_timeout():
    sleep = NoSleep()
    policy = RetryPolicy(interval=10.0, timeout=30.0, sleep=sleep)

    def always_locked():
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(ConnectivityError):
        policy.run(always_locked, "test")
    assert sleep.calls == [10.0, 10.0, 10.0]


def test_retry_recovers():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise sqlite3.OperationalError("database is locked")
        return "done"

    assert RetryPolicy(interval=1.0, timeout=5.0, sleep=NoSleep()).run(flaky, "test") == "done"
    assert len(attempts) == 3


def test_unreachable_database(tmp_path, reference_set):
    unreachable = HitStore(
        str(tmp_path / "missing" / "run.sqlite"),
        reference_set,
        RetryPolicy(interval=1.0, timeout=2.0, sleep=NoSleep()),
    )
    with pytest.raises(ConnectivityError):
        unreachable.initialize()


def test_hit_statistics(store):
    store.add_transcripts([make_transcript("abc123"), make_transcript("def456")])
    store.record_hmm_hits(
        [
            HmmHit("EOG001", "abc123", SPECIES, 1e-20, 80.0, 1, 20),
            HmmHit("EOG002", "abc123", SPECIES, 1e-20, 80.0, 1, 20),
            HmmHit("EOG001", "def456", SPECIES, 1e-10, 40.0, 1, 20),
        ]
    )
    assert store.hit_transcripts(SPECIES) == ["abc123", "def456"]
    assert store.groups_with_hits(SPECIES) == ["EOG001", "EOG002"]
    assert store.score_counts(SPECIES) == [(80.0, 2), (40.0, 1)]
    assert [count for _, count in store.log_evalue_counts(SPECIES)] == [2, 1]
