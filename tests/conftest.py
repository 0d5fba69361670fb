import pytest

from orthograph.config import RunConfig
from orthograph.orthoset import OrthologGroup, ReferenceSet
from orthograph.records import SequencePair, Transcript
from orthograph.store import HitStore, RetryPolicy

SPECIES = "Specimen"
SET_NAME = "testset"
TAXA = ["T1", "T2", "T3", "T4", "T5"]


def peptide_id(group, taxon):
    return f"{group}|{taxon}|p1"


def make_reference_set(taxa=TAXA, groups=("EOG001", "EOG002")):
    return ReferenceSet(
        name=SET_NAME,
        groups={
            group: OrthologGroup(
                id=group,
                set_name=SET_NAME,
                members={
                    taxon: SequencePair(peptide_id(group, taxon), peptide_id(group, taxon))
                    for taxon in taxa
                },
            )
            for group in groups
        },
        taxa=list(taxa),
    )


def make_config(tmp_path=None, **kwargs):
    settings = {
        "species": SPECIES,
        "orthoset": SET_NAME,
        "min_fragment_length": 1,
    }
    if tmp_path is not None:
        settings["output_directory"] = str(tmp_path / "out")
    settings.update(kwargs)
    return RunConfig(**settings)


def make_transcript(digest, sequence="MKVLAAGIVWTRPQDESKLLAVGHHE", nt_header="contig", frame=1):
    return Transcript(
        digest=digest,
        header=f"{nt_header}|{frame}",
        sequence=sequence,
        taxon=SPECIES,
        nt_header=nt_header,
        frame=frame,
    )


class NoSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def reference_set():
    return make_reference_set()


@pytest.fixture
def store(tmp_path, reference_set):
    hit_store = HitStore(
        str(tmp_path / "run.sqlite"),
        reference_set,
        RetryPolicy(interval=0.01, timeout=0.05, sleep=NoSleep()),
    )
    hit_store.initialize()
    return hit_store
