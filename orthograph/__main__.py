#!/usr/bin/env python
"""Order:
    1. Makeref (once per reference set)
    2. Search
    3. Reporter
"""
import argparse


class CaseInsensitiveArgumentParser(argparse.ArgumentParser):
    def _parse_known_args(self, arg_strings, *args, **kwargs):
        lower_arg_string = list(map(str.lower, arg_strings))
        functions = []
        for action in self._actions:
            if isinstance(action, argparse._SubParsersAction):
                functions = action.choices.keys()
                break

        for arg in lower_arg_string:
            for subparser in functions:
                if subparser.lower() == arg:
                    # Only replace first and only instance of command
                    arg_strings[lower_arg_string.index(subparser.lower())] = subparser
                    return super()._parse_known_args(arg_strings, *args, **kwargs)

        return super()._parse_known_args(arg_strings, *args, **kwargs)


def subcmd_makeref(sp):
    par = sp.add_parser(
        "Makeref",
        help="Builds a reference set from a folder of GROUP|TAXON|ID fasta files: "
        "per group HMMs, a Diamond database of all reference peptides and the membership database.",
    )
    par.add_argument(
        "INPUT",
        type=str,
        help="Folder of peptide fasta files with GROUP|TAXON|ID headers.",
    )
    par.add_argument(
        "-nt",
        "--nt_input",
        type=str,
        help="Folder of matching nucleotide fasta files.",
        default=None,
    )
    par.add_argument(
        "-k",
        "--kick",
        type=str,
        help="A new line delimited file containing taxon to kick.",
        default=None,
    )
    par.add_argument(
        "-s",
        "--set",
        type=str,
        help="Name of the set being produced. Defaults to the input folder name.",
    )
    par.add_argument(
        "-od",
        "--orthoset_dir",
        type=str,
        default="orthosets",
        help="Path to the Orthosets dir.",
    )
    par.add_argument(
        "-ovw",
        "--overwrite",
        action="store_true",
        help="Overwrite existing files.",
    )
    par.set_defaults(func=makeref, formathelp=par.format_help)


def makeref(argsobj):
    from . import makeref

    if not makeref.main(argsobj):
        print()
        print(argsobj.formathelp())


def run_args(par):
    par.add_argument(
        "-sp",
        "--species",
        type=str,
        default=None,
        help="Name of the species the transcripts belong to.",
    )
    par.add_argument(
        "-c",
        "--config",
        type=str,
        default=None,
        help="TOML file with run settings. Command line arguments take precedence.",
    )
    par.add_argument(
        "-out",
        "--out",
        type=str,
        default=None,
        help="Output directory for search results.",
    )
    par.add_argument(
        "-db",
        "--database",
        type=str,
        default=None,
        help="Path of the sqlite results database. Defaults to OUT/SPECIES.sqlite",
    )
    par.add_argument(
        "-rt",
        "--reference_taxa",
        type=str,
        default=None,
        help="Comma separated reference taxa counted for coverage. Defaults to every taxon in the set.",
    )
    par.add_argument(
        "--strict",
        action="store_true",
        help="Require every reference taxon to confirm a transcript.",
    )
    par.add_argument(
        "-st",
        "--soft_threshold",
        type=int,
        default=None,
        help="Number of reference taxa allowed to miss in soft coverage mode.",
    )
    par.add_argument(
        "-e",
        "--evalue",
        type=float,
        default=None,
        help="HMM search evalue threshold.",
    )
    par.add_argument(
        "-sc",
        "--score",
        type=float,
        default=None,
        help="HMM search score threshold. Exclusive with --evalue.",
    )
    par.add_argument(
        "-re",
        "--reciprocal_evalue",
        type=float,
        default=None,
        help="Reciprocal search evalue threshold.",
    )
    par.add_argument(
        "-rs",
        "--reciprocal_score",
        type=float,
        default=None,
        help="Reciprocal search score threshold. Exclusive with --reciprocal_evalue.",
    )
    par.add_argument(
        "-ml",
        "--min_length",
        type=int,
        default=None,
        help="Minimum length of a candidate fragment in amino acids.",
    )


def subcmd_search(subparsers):
    par = subparsers.add_parser(
        "Search",
        help="Translates transcripts, searches them with every group HMM and keeps the hits "
        "whose reciprocal search lands back in the group.",
    )
    par.add_argument(
        "INPUT",
        help="Nucleotide transcript fasta files.",
        action="extend",
        nargs="*",
    )
    run_args(par)
    par.add_argument(
        "-cont",
        "--continue",
        dest="continue_run",
        action="store_true",
        help="Resume a previous run, only redoing searches that are missing or failed.",
    )
    par.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=None,
        help="Seconds after which a single external search is abandoned.",
    )
    par.add_argument(
        "-mh",
        "--max_hits",
        type=int,
        default=None,
        help="Maximum number of reciprocal hits per fragment.",
    )
    par.add_argument(
        "-rp",
        "--reciprocal_program",
        type=str,
        default=None,
        help="Diamond binary used for the reciprocal search.",
    )
    par.set_defaults(func=search, formathelp=par.format_help)


def search(args):
    from . import search

    if not search.main(args):
        print()
        print(args.formathelp())


def subcmd_reporter(subparsers):
    par = subparsers.add_parser(
        "Reporter",
        help="Writes peptide and nucleotide fasta per ortholog group for the assigned transcripts.",
    )
    run_args(par)
    par.add_argument(
        "-nf",
        "--no_frameshift_correction",
        action="store_true",
        help="Cut nucleotides by reading frame instead of aligning with exonerate.",
    )
    par.add_argument(
        "-gz",
        "--compress",
        action="store_true",
        help="Output fasta files as compressed files using gzip",
    )
    par.set_defaults(func=reporter, formathelp=par.format_help)


def reporter(args):
    from . import reporter

    if not reporter.main(args):
        print()
        print(args.formathelp())


def main():
    parser = CaseInsensitiveArgumentParser(
        prog="orthograph",
        description="Order: Makeref, Search, Reporter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=None,
        help="Verbosity level. Repeat for increased verbosity. Defaults to the config file, else 0.",
    )
    parser.add_argument(
        "-p",
        "--processes",
        type=int,
        default=None,
        help="Number of threads used to call processes. Defaults to the config file, else 1.",
    )
    parser.add_argument(
        "-oi",
        "--orthoset_input",
        type=str,
        default=None,
        help="Path to directory of Orthosets folder. Defaults to the config file, else orthosets.",
    )
    parser.add_argument(
        "-os",
        "--orthoset",
        type=str,
        default=None,
        help="Current Orthoset to be used.",
    )

    subparsers = parser.add_subparsers()
    subcmd_makeref(subparsers)
    subcmd_search(subparsers)
    subcmd_reporter(subparsers)

    args = parser.parse_args()
    if not hasattr(args, "func"):
        parser.print_help()
        parser.exit()
    args.func(args)


if __name__ == "__main__":
    main()
