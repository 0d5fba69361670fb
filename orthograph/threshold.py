from collections.abc import Iterable
from typing import Optional, Union

from .config import ThresholdConfig
from .records import HmmHit, ReciprocalHit

AnyHit = Union[HmmHit, ReciprocalHit]


def accepts(value: float, config: ThresholdConfig) -> bool:
    """Check a raw evalue or score against the active threshold. Boundaries are inclusive.

    Args:
    ----
        value (float): The evalue when the config is in evalue mode, the score otherwise.
        config (ThresholdConfig): The active threshold.
    Returns:
    -------
        bool: True if the value passes.
    """
    if config.evalue_max is not None:
        return value <= config.evalue_max
    return value >= config.score_min


def hit_value(hit: AnyHit, config: ThresholdConfig) -> float:
    if config.evalue_max is not None:
        return hit.evalue
    return hit.score


def accepts_hit(hit: AnyHit, config: ThresholdConfig) -> bool:
    return accepts(hit_value(hit, config), config)


def filter_hits(hits: Iterable[AnyHit], config: ThresholdConfig) -> list:
    return [hit for hit in hits if accepts_hit(hit, config)]


def _start(hit: AnyHit) -> int:
    if isinstance(hit, HmmHit):
        return hit.env_start
    return hit.start


def rank_key(hit: AnyHit, config: ThresholdConfig) -> tuple:
    # lower sorts first: lowest evalue, or highest score in score mode, then earliest start
    if config.evalue_max is not None:
        primary = hit.evalue
    else:
        primary = -hit.score
    return (primary, _start(hit), hit.target)


def best_hit(hits: Iterable[AnyHit], config: ThresholdConfig) -> Optional[AnyHit]:
    hits = list(hits)
    if not hits:
        return None
    return min(hits, key=lambda hit: rank_key(hit, config))
