"""Run configuration.

Every knob the search pipeline honours lives in one frozen RunConfig which is
built once from the command line (optionally layered over a TOML file) and then
passed into the components that need it. Nothing here is global.

Example TOML file:

    species = "Apis_mellifera"
    orthoset = "Hymenoptera_v1"
    reference_taxa = ["Nasonia", "Drosophila"]

    [hmm_threshold]
    evalue_max = 1e-5

    [reciprocal_threshold]
    evalue_max = 1e-5

    [coverage]
    mode = "soft"
    soft_threshold = 1
"""
from argparse import Namespace
from typing import Optional

import msgspec
import msgspec.structs
import msgspec.toml
from msgspec import Struct, field

from .exceptions import ConfigurationError

STRICT = "strict"
SOFT = "soft"
COVERAGE_MODES = (STRICT, SOFT)


class ThresholdConfig(Struct, frozen=True):
    """Exactly one of evalue_max or score_min is active, the other is None."""

    evalue_max: Optional[float] = 1e-5
    score_min: Optional[float] = None

    def __post_init__(self):
        if self.evalue_max is not None and self.score_min is not None:
            raise ConfigurationError(
                f"evalue ({self.evalue_max}) and score ({self.score_min}) thresholds are mutually exclusive"
            )
        if self.evalue_max is None and self.score_min is None:
            raise ConfigurationError("Either an evalue or a score threshold is required")

    @property
    def mode(self) -> str:
        return "evalue" if self.evalue_max is not None else "score"

    @classmethod
    def by_evalue(cls, evalue_max: float) -> "ThresholdConfig":
        return cls(evalue_max=evalue_max, score_min=None)

    @classmethod
    def by_score(cls, score_min: float) -> "ThresholdConfig":
        return cls(evalue_max=None, score_min=score_min)


class CoveragePolicy(Struct, frozen=True):
    mode: str = SOFT
    soft_threshold: int = 5

    def __post_init__(self):
        if self.mode not in COVERAGE_MODES:
            raise ConfigurationError(
                f"Unknown coverage mode '{self.mode}', expected one of {', '.join(COVERAGE_MODES)}"
            )
        if self.soft_threshold < 0:
            raise ConfigurationError("Soft threshold must not be negative")

    @property
    def strict(self) -> bool:
        return self.mode == STRICT


class RunConfig(Struct, frozen=True):
    species: str
    orthoset: str
    orthoset_input: str = "orthosets"
    output_directory: str = "output"
    database: str = ""
    hmm_threshold: ThresholdConfig = field(default_factory=ThresholdConfig)
    reciprocal_threshold: ThresholdConfig = field(default_factory=ThresholdConfig)
    coverage: CoveragePolicy = field(default_factory=CoveragePolicy)
    reference_taxa: tuple[str, ...] = ()
    workers: int = 1
    search_timeout: Optional[float] = None
    db_timeout: float = 60.0
    db_retry_interval: float = 10.0
    hmmsearch_program: str = "hmmsearch"
    reciprocal_program: str = "diamond"
    exonerate_program: str = "exonerate"
    max_reciprocal_hits: int = 10
    min_fragment_length: int = 30
    frameshift_correction: bool = True
    compress: bool = False
    exonerate_score: int = 50
    continue_run: bool = False
    verbose: int = 0

    def __post_init__(self):
        if self.workers < 1:
            raise ConfigurationError("At least one worker is required")
        if self.db_timeout < 0 or self.db_retry_interval <= 0:
            raise ConfigurationError("Database timeout and retry interval must be positive")
        if self.search_timeout is not None and self.search_timeout <= 0:
            raise ConfigurationError("Search timeout must be positive")

    @property
    def database_path(self) -> str:
        return self.database or f"{self.output_directory}/{self.species}.sqlite"

    def considered_taxa(self, set_taxa) -> tuple[str, ...]:
        """Reference taxa whose confirmation counts towards coverage."""
        if self.reference_taxa:
            return tuple(self.reference_taxa)
        return tuple(sorted(set_taxa))

    def validate_against(self, reference_set) -> None:
        """Reject coverage settings the loaded reference set cannot satisfy."""
        missing = [taxon for taxon in self.reference_taxa if taxon not in reference_set.taxa]
        if missing:
            raise ConfigurationError(
                f"Reference taxa not present in {reference_set.name}: {', '.join(missing)}"
            )
        considered = self.considered_taxa(reference_set.taxa)
        if not considered:
            raise ConfigurationError(f"{reference_set.name} contains no reference taxa")
        if self.coverage.strict and len(set(considered)) != len(considered):
            raise ConfigurationError("Duplicate reference taxa in strict coverage mode")


def threshold_from_args(evalue, score, default: ThresholdConfig) -> ThresholdConfig:
    if evalue is not None and score is not None:
        raise ConfigurationError("Specify either --evalue or --score, not both")
    if evalue is not None:
        return ThresholdConfig.by_evalue(evalue)
    if score is not None:
        return ThresholdConfig.by_score(score)
    return default


def load_config_file(path: str) -> dict:
    with open(path, "rb") as fp:
        try:
            return msgspec.toml.decode(fp.read())
        except msgspec.DecodeError as e:
            raise ConfigurationError(f"Unable to read config file {path}: {e}") from e


def from_args(args: Namespace) -> RunConfig:
    """Build a RunConfig from parsed arguments, layered over --config if given."""
    settings = {}
    if getattr(args, "config", None):
        settings = load_config_file(args.config)

    overrides = {
        "species": getattr(args, "species", None),
        "orthoset": args.orthoset,
        "orthoset_input": args.orthoset_input,
        "output_directory": getattr(args, "out", None),
        "database": getattr(args, "database", None),
        "workers": args.processes,
        "search_timeout": getattr(args, "timeout", None),
        "reciprocal_program": getattr(args, "reciprocal_program", None),
        "max_reciprocal_hits": getattr(args, "max_hits", None),
        "min_fragment_length": getattr(args, "min_length", None),
        "verbose": args.verbose,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})

    # a score threshold given on its own switches the stage to score mode
    for stage in ("hmm_threshold", "reciprocal_threshold"):
        threshold = settings.get(stage)
        if isinstance(threshold, dict) and "score_min" in threshold:
            threshold.setdefault("evalue_max", None)

    if getattr(args, "reference_taxa", None):
        settings["reference_taxa"] = [i.strip() for i in args.reference_taxa.split(",") if i.strip()]
    if getattr(args, "strict", False):
        settings["coverage"] = {**settings.get("coverage", {}), "mode": STRICT}
    if getattr(args, "soft_threshold", None) is not None:
        settings["coverage"] = {**settings.get("coverage", {}), "soft_threshold": args.soft_threshold}
    if getattr(args, "continue_run", False):
        settings["continue_run"] = True
    if getattr(args, "compress", False):
        settings["compress"] = True
    if getattr(args, "no_frameshift_correction", False):
        settings["frameshift_correction"] = False

    try:
        config = msgspec.convert(settings, type=RunConfig)
    except msgspec.ValidationError as e:
        raise ConfigurationError(str(e)) from e

    hmm_threshold = threshold_from_args(
        getattr(args, "evalue", None), getattr(args, "score", None), config.hmm_threshold
    )
    reciprocal_threshold = threshold_from_args(
        getattr(args, "reciprocal_evalue", None),
        getattr(args, "reciprocal_score", None),
        config.reciprocal_threshold,
    )
    return msgspec.structs.replace(
        config, hmm_threshold=hmm_threshold, reciprocal_threshold=reciprocal_threshold
    )
