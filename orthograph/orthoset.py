from os import path
from typing import Optional

from msgspec import Struct, field

from .records import SequencePair


class OrthologGroup(Struct, frozen=True):
    id: str
    set_name: str
    members: dict[str, SequencePair]


class ReferenceTarget(Struct, frozen=True):
    group: str
    taxon: str
    length: int = 0


class ReferenceSet(Struct):
    """A loaded orthoset. Read-only for the duration of a search run."""

    name: str
    groups: dict[str, OrthologGroup]
    taxa: list[str]
    path: str = ""
    targets: dict[str, ReferenceTarget] = field(default_factory=dict)

    def __post_init__(self):
        if not self.targets:
            for group in self.groups.values():
                for taxon, pair in group.members.items():
                    self.targets[pair.peptide_id] = ReferenceTarget(group.id, taxon)

    @property
    def search_index(self) -> str:
        return path.join(self.path, "diamond", self.name + ".dmnd")

    @property
    def hmm_dir(self) -> str:
        return path.join(self.path, "hmms")

    def hmm_file(self, group_id: str) -> str:
        return path.join(self.hmm_dir, f"{group_id}.hmm")

    def lookup(self, target: str) -> Optional[ReferenceTarget]:
        return self.targets.get(target)

    def __contains__(self, group_id: str) -> bool:
        return group_id in self.groups
