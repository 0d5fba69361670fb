import os

import pytest
from isal import igzip
from msgspec import json

from conftest import SPECIES, make_config, make_transcript, peptide_id
from orthograph.aggregate import ResultAggregator
from orthograph.exceptions import SearchExecutionFailure
from orthograph.exonerate import ExonerateHit
from orthograph.reciprocal import ReciprocalMatcher
from orthograph.records import HmmHit, ReciprocalHit
from orthograph.reporter import GroupWriter, nt_region, write_hitlist

NT = "ATG" + "GCT" * 25
PEPTIDE = "M" + "A" * 25


def test_nt_region_forward():
    assert nt_region(NT, 1, 2, 11) == "GCT" * 10
    assert nt_region("AATGAAACCC", 2, 1, 2) == "ATGAAA"


def test_nt_region_reverse():
    assert nt_region("ATGAAACCC", -1, 1, 2) == "GGGTTT"
    assert nt_region("ATGAAACCCT", -2, 2, 3) == "TTTCAT"


def reference_sequence(peptide_id, kind):
    return f"{kind}:{peptide_id}"


@pytest.fixture
def assigned_store(store):
    store.add_transcripts([make_transcript("abc123", sequence=PEPTIDE)])
    store.add_nt_sequences(SPECIES, [("contig", NT)])
    fragment = store.record_hmm_hit(HmmHit("EOG001", "abc123", SPECIES, 1e-20, 90.0, 2, 11))
    store.record_reciprocal_hits(
        [
            ReciprocalHit(fragment, peptide_id("EOG001", "T1"), SPECIES, 1e-30, 150.0, 1, 10),
            ReciprocalHit(fragment, peptide_id("EOG001", "T2"), SPECIES, 1e-35, 170.0, 1, 10),
        ]
    )
    store.mark_searched(fragment, "testset", "reciprocal", SPECIES, hits=2)
    return store


def writer(tmp_path, reference_set, store, aligner, **kwargs):
    config = make_config(tmp_path, **kwargs)
    aggregator = ResultAggregator(store, ReciprocalMatcher(reference_set, config), SPECIES)
    return GroupWriter(config, reference_set, store, aggregator, reference_sequence, aligner)


def no_alignment(reference, transcript, **kwargs):
    return None


def test_references_come_first(tmp_path, reference_set, assigned_store):
    aa_out, nt_out, records = writer(tmp_path, reference_set, assigned_store, no_alignment).sequences("EOG001")

    assert [record.transcript for record in records] == ["abc123"]
    assert aa_out == [
        ("EOG001|T1|EOG001|T1|p1|.", "aa:EOG001|T1|p1"),
        ("EOG001|T2|EOG001|T2|p1|.", "aa:EOG001|T2|p1"),
        ("EOG001|Specimen|contig|1|2-11", "A" * 10),
    ]
    assert nt_out[-1] == ("EOG001|Specimen|contig|1|2-11", "GCT" * 10)
    assert len(nt_out) == 3


def test_frameshift_correction_uses_best_reference(tmp_path, reference_set, assigned_store):
    calls = []

    def aligner(reference, transcript, **kwargs):
        calls.append((reference, transcript))
        return ExonerateHit("abc123", 4, 12, 60.0, 1, 3, reference[0], "GCTGCTGCT")

    aa_out, nt_out, _ = writer(tmp_path, reference_set, assigned_store, aligner).sequences("EOG001")

    assert calls == [(("EOG001|T2|p1", "aa:EOG001|T2|p1"), ("abc123", NT))]
    assert aa_out[-1][1] == "AAA"
    assert nt_out[-1][1] == "GCTGCTGCT"


def test_failed_alignment_falls_back_to_envelope(tmp_path, reference_set, assigned_store):
    def aligner(reference, transcript, **kwargs):
        raise SearchExecutionFailure("exonerate", reference[0], "exit code 1")

    aa_out, nt_out, _ = writer(tmp_path, reference_set, assigned_store, aligner).sequences("EOG001")
    assert aa_out[-1][1] == "A" * 10
    assert nt_out[-1][1] == "GCT" * 10


def test_correction_can_be_disabled(tmp_path, reference_set, assigned_store):
    def aligner(reference, transcript, **kwargs):
        raise AssertionError("aligner should not run")

    aa_out, _, _ = writer(
        tmp_path, reference_set, assigned_store, aligner, frameshift_correction=False
    ).sequences("EOG001")
    assert aa_out[-1][1] == "A" * 10


def test_write(tmp_path, reference_set, assigned_store):
    group_writer = writer(tmp_path, reference_set, assigned_store, no_alignment)
    os.makedirs(group_writer.aa_out)
    os.makedirs(group_writer.nt_out)

    assert len(group_writer.write("EOG001")) == 1
    assert group_writer.write("EOG002") == []

    aa = (tmp_path / "out" / "aa" / "EOG001.aa.fa").read_text()
    assert aa.endswith(">EOG001|Specimen|contig|1|2-11\nAAAAAAAAAA\n")
    assert (tmp_path / "out" / "nt" / "EOG001.nt.fa").exists()
    assert not (tmp_path / "out" / "aa" / "EOG002.aa.fa").exists()


def test_write_compressed(tmp_path, reference_set, assigned_store):
    group_writer = writer(tmp_path, reference_set, assigned_store, no_alignment, compress=True)
    os.makedirs(group_writer.aa_out)
    os.makedirs(group_writer.nt_out)
    group_writer.write("EOG001")

    with igzip.open(tmp_path / "out" / "aa" / "EOG001.aa.fa.gz", "rt") as fp:
        assert fp.read().startswith(">EOG001|T1|EOG001|T1|p1|.\n")
    assert not (tmp_path / "out" / "aa" / "EOG001.aa.fa").exists()


def test_write_hitlist(tmp_path, reference_set, assigned_store):
    group_writer = writer(tmp_path, reference_set, assigned_store, no_alignment)
    out = tmp_path / "hitlist.json"
    write_hitlist(group_writer.aggregator, ["EOG001", "EOG002"], str(out))

    assert json.decode(out.read_bytes()) == {"-46.0517": {"EOG001": ["abc123"]}}
