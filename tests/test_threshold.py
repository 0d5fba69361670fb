import pytest

from orthograph.config import ThresholdConfig, threshold_from_args
from orthograph.exceptions import ConfigurationError
from orthograph.records import HmmHit, ReciprocalHit
from orthograph.threshold import accepts, best_hit, filter_hits


def hmm_hit(evalue, score, env_start=1, target="abc123"):
    return HmmHit("EOG001", target, "Specimen", evalue, score, env_start, env_start + 20)


def test_evalue_boundary_is_inclusive():
    config = ThresholdConfig(evalue_max=1e-5)
    assert accepts(1e-5, config)
    assert accepts(1e-20, config)
    assert not accepts(1.0001e-5, config)


def test_score_boundary_is_inclusive():
    config = ThresholdConfig(evalue_max=None, score_min=50.0)
    assert accepts(50.0, config)
    assert accepts(120.0, config)
    assert not accepts(49.99, config)


def test_thresholds_are_mutually_exclusive():
    with pytest.raises(ConfigurationError):
        ThresholdConfig(evalue_max=1e-5, score_min=50.0)
    with pytest.raises(ConfigurationError):
        ThresholdConfig(evalue_max=None, score_min=None)


def test_each_mode_disables_the_other_threshold():
    score_mode = ThresholdConfig.by_score(40.0)
    assert score_mode.evalue_max is None
    assert score_mode.score_min == 40.0
    assert score_mode.mode == "score"

    evalue_mode = ThresholdConfig.by_evalue(1e-3)
    assert evalue_mode.score_min is None
    assert evalue_mode.mode == "evalue"


def test_argument_threshold_replaces_the_configured_mode():
    configured = ThresholdConfig.by_score(40.0)
    assert threshold_from_args(1e-3, None, configured) == ThresholdConfig(evalue_max=1e-3)
    assert threshold_from_args(None, 25.0, ThresholdConfig()) == ThresholdConfig(evalue_max=None, score_min=25.0)
    assert threshold_from_args(None, None, configured) is configured


def test_best_hit_prefers_lowest_evalue():
    config = ThresholdConfig(evalue_max=1e-5)
    hits = [hmm_hit(1e-10, 90.0), hmm_hit(1e-30, 40.0), hmm_hit(1e-20, 200.0)]
    assert best_hit(hits, config).evalue == 1e-30


def test_best_hit_prefers_highest_score_in_score_mode():
    config = ThresholdConfig(evalue_max=None, score_min=10.0)
    hits = [hmm_hit(1e-10, 90.0), hmm_hit(1e-30, 40.0), hmm_hit(1e-20, 200.0)]
    assert best_hit(hits, config).score == 200.0


def test_best_hit_ties_go_to_earlier_envelope():
    config = ThresholdConfig(evalue_max=1e-5)
    hits = [hmm_hit(1e-10, 90.0, env_start=40), hmm_hit(1e-10, 90.0, env_start=3)]
    assert best_hit(hits, config).env_start == 3


def test_best_hit_of_reciprocal_hits_uses_start():
    config = ThresholdConfig(evalue_max=1e-5)
    hits = [
        ReciprocalHit("frag", "EOG001|T2|p1", "Specimen", 1e-9, 50.0, 30, 90),
        ReciprocalHit("frag", "EOG001|T1|p1", "Specimen", 1e-9, 50.0, 2, 90),
    ]
    assert best_hit(hits, config).target == "EOG001|T1|p1"
    assert best_hit([], config) is None


def test_filter_hits():
    config = ThresholdConfig(evalue_max=1e-5)
    hits = [hmm_hit(1e-4, 10.0), hmm_hit(1e-5, 20.0), hmm_hit(1e-9, 30.0)]
    assert [hit.score for hit in filter_hits(hits, config)] == [20.0, 30.0]
