import os
import subprocess
from multiprocessing.pool import ThreadPool
from pathlib import Path
from tempfile import NamedTemporaryFile

from msgspec import Struct, json

from . import rocky
from .orthoset import OrthologGroup, ReferenceTarget
from .records import SequencePair
from .timekeeper import KeeperMode, TimeKeeper
from .utils import gettempdir, parseFasta, printv, writeFasta

FASTA_EXTENSIONS = {".fa", ".fas", ".fasta", ".gz"}


class ReferenceSequence(Struct):
    group: str
    taxon: str
    id: str
    aa: str
    nt: str = ""

    @property
    def target(self) -> str:
        return f"{self.group}|{self.taxon}|{self.id}"


def split_header(header: str) -> tuple[str, str, str]:
    """GROUP|TAXON|ID, anything after the third field is kept in the id."""
    fields = header.split("|", 2)
    if len(fields) != 3 or not all(fields):
        raise ValueError(f"Malformed reference header '{header}', expected GROUP|TAXON|ID")
    return fields[0], fields[1], fields[2].split(" ")[0]


def fasta_files(folder: Path) -> list[Path]:
    return sorted(i for i in folder.iterdir() if i.suffix in FASTA_EXTENSIONS)


def read_references(
    aa_input: Path, nt_input: Path = None, taxa_to_kick: set = None, verbosity: int = 0
) -> dict[str, dict[str, ReferenceSequence]]:
    """Collect one reference sequence per taxon per group, keeping the longest variant."""
    taxa_to_kick = taxa_to_kick or set()
    groups = {}
    kicked = 0
    for fa_file in fasta_files(aa_input):
        for header, seq in parseFasta(fa_file):
            group, taxon, seq_id = split_header(header)
            if taxon in taxa_to_kick:
                kicked += 1
                continue
            seq = seq.replace("-", "").replace(".", "").upper()
            current = groups.setdefault(group, {}).get(taxon)
            if current is None or len(seq) > len(current.aa):
                groups[group][taxon] = ReferenceSequence(group, taxon, seq_id, seq)

    if nt_input:
        for fa_file in fasta_files(nt_input):
            for header, seq in parseFasta(fa_file):
                group, taxon, seq_id = split_header(header)
                reference = groups.get(group, {}).get(taxon)
                if reference is not None and reference.id == seq_id:
                    reference.nt = seq.replace("-", "").upper()

    printv(f"Read {len(groups)} groups, kicked {kicked} sequences", verbosity, 1)
    return groups


def raw_function(group, references, raw_path, overwrite, verbosity):
    raw_fa_file = raw_path.joinpath(group + ".fa")
    if not raw_fa_file.exists() or overwrite:
        printv(f"Generating: {group}", verbosity, 2)
        writeFasta(raw_fa_file, [(i.target, i.aa) for i in references])
    return raw_fa_file


def aln_function(group, raw_fa_file, aln_path, overwrite, verbosity):
    aln_file = aln_path.joinpath(group + ".aln.fa")
    if aln_file.exists() and aln_file.stat().st_size > 0 and not overwrite:
        return aln_file
    printv(f"Aligning: {group}", verbosity, 2)
    with aln_file.open("w") as fp:
        subprocess.run(
            ["mafft", "--quiet", "--anysymbol", "--legacygappenalty", "--thread", "1", str(raw_fa_file)],
            stdout=fp,
            check=True,
        )
    return aln_file


def hmm_function(group, aln_file, hmm_path, overwrite, verbosity):
    """
    Calls hmmbuild for one aligned group. The profile is named after the group so
    hmmsearch reports the group id as the query name.
    """
    hmm_file = hmm_path.joinpath(group + ".hmm")
    if hmm_file.exists() and hmm_file.stat().st_size > 0 and not overwrite:
        return hmm_file
    printv(f"Generating HMM: {group}", verbosity, 2)
    subprocess.run(
        ["hmmbuild", "--amino", "--informat", "afa", "-n", group, str(hmm_file), str(aln_file)],
        stdout=subprocess.DEVNULL,
        check=True,
    )
    return hmm_file


def build_group(arguments):
    group, references, raw_path, aln_path, hmm_path, overwrite, verbosity = arguments
    raw_fa_file = raw_function(group, references, raw_path, overwrite, verbosity)
    if len(references) == 1:
        aln_file = raw_fa_file
    else:
        aln_file = aln_function(group, raw_fa_file, aln_path, overwrite, verbosity)
    return hmm_function(group, aln_file, hmm_path, overwrite, verbosity)


def make_diamonddb(references: list[ReferenceSequence], set_path: Path, name: str, processes: int):
    """
    Calls the diamond makedb function over every reference peptide of the set.
    """
    diamond_dir = set_path.joinpath("diamond")
    diamond_dir.mkdir(exist_ok=True)
    db_file = diamond_dir.joinpath(name + ".dmnd")

    with NamedTemporaryFile(dir=gettempdir(), suffix=".fa") as fp:
        writeFasta(fp.name, [(i.target, i.aa) for i in references])
        subprocess.run(
            ["diamond", "makedb", "--in", fp.name, "--db", str(db_file), "--threads", str(processes)],
            stdout=subprocess.DEVNULL,
            check=True,
        )
    return db_file


def main(args):
    tk = TimeKeeper(KeeperMode.DIRECT)
    verbose = args.verbose or 0
    processes = args.processes or 1
    aa_input = Path(args.INPUT)
    if not aa_input.is_dir():
        printv("ERROR: Input must be a folder of GROUP|TAXON|ID fasta files.", verbose, 0)
        return False
    nt_input = Path(args.nt_input) if args.nt_input else None

    taxa_to_kick = set()
    if args.kick:
        with open(args.kick) as fp:
            taxa_to_kick = {line.strip() for line in fp if line.strip()}

    set_name = args.set or aa_input.name
    set_path = Path(args.orthoset_dir, set_name)
    raw_path = set_path.joinpath("raw")
    aln_path = set_path.joinpath("aln")
    hmm_path = set_path.joinpath("hmms")
    for folder in (raw_path, aln_path, hmm_path):
        folder.mkdir(parents=True, exist_ok=True)

    try:
        groups = read_references(aa_input, nt_input, taxa_to_kick, verbose)
    except ValueError as e:
        printv(f"ERROR: {e}", verbose, 0)
        return False
    if not groups:
        printv("ERROR: No reference sequences found.", verbose, 0)
        return False

    printv(f"Building HMMs for {len(groups)} groups. Elapsed: {tk.differential():.2f}s", verbose)
    arguments = [
        (group, list(references.values()), raw_path, aln_path, hmm_path, args.overwrite, verbose)
        for group, references in sorted(groups.items())
    ]
    with ThreadPool(processes) as pool:
        pool.map(build_group, arguments)

    all_references = [ref for references in groups.values() for ref in references.values()]
    printv("Making Diamond DB", verbose)
    make_diamonddb(all_references, set_path, set_name, processes)

    printv("Writing reference set to RocksDB", verbose, 1)
    ortholog_groups = {
        group: OrthologGroup(
            id=group,
            set_name=set_name,
            members={
                taxon: SequencePair(ref.target, ref.target if ref.nt else "")
                for taxon, ref in references.items()
            },
        )
        for group, references in groups.items()
    }
    targets = {
        ref.target: ReferenceTarget(ref.group, ref.taxon, len(ref.aa)) for ref in all_references
    }
    taxa = sorted({ref.taxon for ref in all_references})

    db_path = rocky.orthoset_db_path(args.orthoset_dir, set_name)
    os.makedirs(db_path, exist_ok=True)
    rocky.create_pointer("makeref", db_path)
    db = rocky.get_rock("makeref")
    encoder = json.Encoder()
    db.put_bytes("getall:taxoninset", encoder.encode(taxa))
    db.put_bytes("getall:groups", encoder.encode(ortholog_groups))
    db.put_bytes("getall:targetreference", encoder.encode(targets))
    for ref in all_references:
        db.put(f"getaa:{ref.target}", ref.aa)
        if ref.nt:
            db.put(f"getnt:{ref.target}", ref.nt)
    rocky.close_pointer("makeref")

    printv(f"Done! Took {tk.differential():.2f}s", verbose, 1)
    return True
