from os import path

from msgspec import json
from wrap_rocks import RocksDB

from ..exceptions import ConfigurationError
from ..orthoset import OrthologGroup, ReferenceSet, ReferenceTarget


def create_pointer(key, path):
    global rockdb_pointers
    if not rockdb_pointers.get(key):
        rockdb_pointers[key] = RocksDB(path)


def close_pointer(key):
    global rockdb_pointers
    if rockdb_pointers.get(key):
        rockdb_pointers.pop(key)


def get_rock(key):
    global rockdb_pointers
    return rockdb_pointers[key]


rockdb_pointers = {}


def orthoset_db_path(orthoset_input: str, orthoset: str) -> str:
    return path.join(orthoset_input, orthoset, "rocksdb")


def load_reference_set(orthoset_input: str, orthoset: str) -> ReferenceSet:
    """Read group membership and targets of an orthoset built by Makeref."""
    set_path = path.join(orthoset_input, orthoset)
    db_path = orthoset_db_path(orthoset_input, orthoset)
    if not path.exists(db_path):
        raise ConfigurationError(f"Orthoset database not found at {db_path}. Run Makeref first.")

    create_pointer("orthoset", db_path)
    db = get_rock("orthoset")
    taxa = db.get_bytes("getall:taxoninset")
    groups = db.get_bytes("getall:groups")
    targets = db.get_bytes("getall:targetreference")
    if not taxa or not groups or not targets:
        raise ConfigurationError(f"Orthoset database at {db_path} is incomplete")

    return ReferenceSet(
        name=orthoset,
        groups=json.decode(groups, type=dict[str, OrthologGroup]),
        taxa=json.decode(taxa, type=list[str]),
        path=set_path,
        targets=json.decode(targets, type=dict[str, ReferenceTarget]),
    )


def reference_sequence(db: RocksDB, peptide_id: str, kind: str = "aa"):
    return db.get(f"get{kind}:{peptide_id}")
