import os
import textwrap

import pytest

from conftest import SPECIES
from orthograph.config import ThresholdConfig
from orthograph.exceptions import SearchExecutionFailure
from orthograph.hmmsearch import get_hits_from_domtbl, search, threshold_option, valid_domtbl

DOMTBL = """\
#                                                                            --- full sequence --- -------------- this domain -------------   hmm coord   ali coord   env coord
# target name        accession   tlen query name           accession   qlen   E-value  score  bias   #  of  c-Evalue  i-Evalue  score  bias  from    to  from    to  from    to  acc description of target
#------------------- ---------- ----- -------------------- ---------- ----- --------- ------ ----- --- --- --------- --------- ------ ----- ----- ----- ----- ----- ----- ----- ---- ---------------------
abc123               -            120 EOG001               -            300   1.2e-30  105.3   0.1   1   2   4.5e-20   3.1e-18   60.2   0.0    10    80     5    70     3    72 0.95 -
abc123               -            120 EOG001               -            300   1.2e-30  105.3   0.1   2   2     1e-12     8e-11   35.0   0.0    90   150    80   110    78   112 0.90 -
abc123               -            120 EOG001               -            300   1.2e-30  105.3   0.1   2   2     1e-12     8e-11   35.0   0.0    90   150    80   110    78   112 0.90 -
#
# Program:         hmmsearch
# Version:         3.3.2 (Nov 2020)
# Target file:     Specimen.prot.fa
# [ok]
"""


def fake_program(tmp_path, body):
    script = tmp_path / "fake_hmmsearch"
    script.write_text("#!/bin/sh\n" + textwrap.dedent(body))
    os.chmod(script, 0o755)
    return str(script)


def writes_domtbl(tmp_path, content):
    (tmp_path / "canned.domtbl").write_text(content)
    return fake_program(
        tmp_path,
        f"""\
        while [ "$#" -gt 0 ]; do
          if [ "$1" = "--domtblout" ]; then out="$2"; fi
          shift
        done
        cat {tmp_path / "canned.domtbl"} > "$out"
        """,
    )


def test_parse_domtbl(tmp_path):
    domtbl = tmp_path / "EOG001.domtbl"
    domtbl.write_text(DOMTBL)
    hits = get_hits_from_domtbl(str(domtbl), SPECIES)

    assert len(hits) == 2
    first = hits[0]
    assert (first.query, first.target, first.taxon) == ("EOG001", "abc123", SPECIES)
    assert first.evalue == pytest.approx(3.1e-18)
    assert first.score == pytest.approx(60.2)
    assert (first.hmm_start, first.hmm_end) == (10, 80)
    assert (first.ali_start, first.ali_end) == (5, 70)
    assert (first.env_start, first.env_end) == (3, 72)
    assert hits[1].env_start == 78


def test_valid_domtbl(tmp_path):
    domtbl = tmp_path / "EOG001.domtbl"
    domtbl.write_text(DOMTBL)
    assert valid_domtbl(str(domtbl))

    domtbl.write_text(DOMTBL.replace("# [ok]\n", ""))
    assert not valid_domtbl(str(domtbl))

    domtbl.write_text("abc123 - 120 EOG001 - 300 1e-20\n# [ok]\n")
    assert not valid_domtbl(str(domtbl))

    assert not valid_domtbl(str(tmp_path / "missing.domtbl"))


def test_threshold_option():
    assert threshold_option(ThresholdConfig(evalue_max=1e-5)) == ["-E", "1e-05"]
    assert threshold_option(ThresholdConfig(evalue_max=None, score_min=25.0)) == ["-T", "25.0"]


def test_search(tmp_path):
    program = writes_domtbl(tmp_path, DOMTBL)
    out = tmp_path / "EOG001.domtbl"
    hits = search("EOG001.hmm", "prot.fa", str(out), SPECIES, ThresholdConfig(), program=program)

    assert [hit.env_start for hit in hits] == [3, 78]
    assert valid_domtbl(str(out))
    assert not (tmp_path / "EOG001.domtbl.partial").exists()


def test_search_without_hits(tmp_path):
    program = writes_domtbl(tmp_path, "# no hits\n# [ok]\n")
    out = tmp_path / "EOG001.domtbl"
    assert search("EOG001.hmm", "prot.fa", str(out), SPECIES, ThresholdConfig(), program=program) == []
    assert valid_domtbl(str(out))


def test_search_truncated_output(tmp_path):
    program = writes_domtbl(tmp_path, DOMTBL.replace("# [ok]\n", ""))
    out = tmp_path / "EOG001.domtbl"
    with pytest.raises(SearchExecutionFailure, match="no output produced"):
        search("EOG001.hmm", "prot.fa", str(out), SPECIES, ThresholdConfig(), program=program)
    assert not out.exists()


def test_search_exit_code(tmp_path):
    program = fake_program(tmp_path, "echo 'Error: bad profile' >&2\nexit 1\n")
    with pytest.raises(SearchExecutionFailure) as e:
        search("EOG001.hmm", "prot.fa", str(tmp_path / "x.domtbl"), SPECIES, ThresholdConfig(), program=program)
    assert e.value.query == "EOG001.hmm"
    assert "exit code 1" in e.value.reason
    assert "bad profile" in e.value.reason


def test_search_timeout(tmp_path):
    program = fake_program(tmp_path, "exec sleep 10\n")
    with pytest.raises(SearchExecutionFailure, match="timed out"):
        search(
            "EOG001.hmm",
            "prot.fa",
            str(tmp_path / "x.domtbl"),
            SPECIES,
            ThresholdConfig(),
            program=program,
            timeout=0.5,
        )


def test_missing_program(tmp_path):
    with pytest.raises(SearchExecutionFailure):
        search(
            "EOG001.hmm",
            "prot.fa",
            str(tmp_path / "x.domtbl"),
            SPECIES,
            ThresholdConfig(),
            program=str(tmp_path / "not_installed"),
        )
