#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
QIIME 2 runner for 23S–5S rRNA amplicon data.

Overview
--------
Runs the amplicon runbook end to end inside an existing QIIME 2 environment
(e.g. a Singularity shell): builds the import manifest from a directory of
FASTQs, imports and summarises the reads, denoises, assigns taxonomy and
renders taxonomic bar plots.

Profiles
--------
illumina        Paired-end, DADA2 (trunc 148/148), Naive Bayes classifier
                trained from a custom reference, confidence 0.99, bar plot of
                the full and the filtered table.
illumina_blast  As 'illumina' but taxonomy by VSEARCH consensus (95 % id).
miseq           Paired-end, cutadapt primer trim, DADA2 (trunc 280/280),
                then as 'illumina'.
nanopore        Single-end, TSV v2 manifest, subsample 10 %, q-score filter,
                VSEARCH dereplication, pre-trained sklearn classifier.

Every profile default can be overridden from the command line.

Notes
-----
- Each QIIME 2 call runs without a shell; stdout/stderr go to a step log
  under <out_dir>/logs.
- Named arguments are required; no positional arguments are used.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
import psutil

from make_manifest import (
    ManifestConfig,
    ManifestError,
    ManifestFormat,
    ReadMode,
    generate_manifest,
    qiime_import_spec,
    read_manifest,
)


# Wall-clock start for runtime/elapsed logging
_SCRIPT_START_TIME = time.time()

MISEQ_PRIMER_F = "TNNNNNNNNNNNNNNNNNNC"
MISEQ_PRIMER_R = "GNNNNNNNNNNNNNNNNNT"


@dataclass(frozen=True)
class Profile:
    """Default parameters for one variant of the runbook.

    Attributes
    ----------
    name : str
        Profile key.
    mode : ReadMode
        Paired-end or single-end import.
    denoiser : str
        'dada2_paired' or 'vsearch_dereplicate'.
    trunc_len_f, trunc_len_r : int
        DADA2 truncation lengths.
    trim_primers : bool
        Run q2-cutadapt trim-paired before denoising.
    manifest_format : ManifestFormat
        Layout of the generated import manifest.
    taxonomy_method : str
        'sklearn' or 'vsearch'.
    confidence : float | None
        classify-sklearn confidence; None keeps the toolkit default.
    filter_include : str | None
        Taxon substring for 'taxa filter-table'; None skips filtering.
    """

    name: str
    mode: ReadMode
    denoiser: str
    manifest_format: ManifestFormat = ManifestFormat.CSV_LEGACY
    trunc_len_f: int = 0
    trunc_len_r: int = 0
    trim_primers: bool = False
    taxonomy_method: str = "sklearn"
    confidence: Optional[float] = None
    filter_include: Optional[str] = None


PROFILES: Dict[str, Profile] = {
    "illumina": Profile(
        name="illumina", mode=ReadMode.PAIRED, denoiser="dada2_paired",
        trunc_len_f=148, trunc_len_r=148, taxonomy_method="sklearn",
        confidence=0.99, filter_include="_",
    ),
    "illumina_blast": Profile(
        name="illumina_blast", mode=ReadMode.PAIRED, denoiser="dada2_paired",
        trunc_len_f=148, trunc_len_r=148, taxonomy_method="vsearch",
    ),
    "miseq": Profile(
        name="miseq", mode=ReadMode.PAIRED, denoiser="dada2_paired",
        trunc_len_f=280, trunc_len_r=280, trim_primers=True,
        taxonomy_method="sklearn", confidence=0.99, filter_include="_",
    ),
    "nanopore": Profile(
        name="nanopore", mode=ReadMode.SINGLE, denoiser="vsearch_dereplicate",
        manifest_format=ManifestFormat.TSV_V2,
        taxonomy_method="sklearn",
    ),
}


class Paths:
    """Container for key filesystem paths used in the run.

    Attributes
    ----------
    root : Path
        Root directory for all results.
    artifacts : Path
        Directory for QIIME 2 artefacts (.qza).
    visuals : Path
        Directory for QIIME 2 visualisations (.qzv).
    reference : Path
        Directory for imported reference reads/taxonomy and trained classifiers.
    taxonomy : Path
        Directory for taxonomy artefacts.
    logs : Path
        Directory for log files.
    manifest : Path
        Generated import manifest.
    report_tsv : Path
        Tab-separated run summary.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.artifacts = self.root / "artifacts_qza"
        self.visuals = self.root / "visuals_qzv"
        self.reference = self.root / "reference"
        self.taxonomy = self.root / "taxonomy"
        self.logs = self.root / "logs"
        self.manifest = self.root / "manifest"
        self.report_tsv = self.root / "run_report.tsv"

    def mkdirs(self) -> None:
        """Create all output directories if they do not already exist."""
        for p in (self.artifacts, self.visuals, self.reference, self.taxonomy, self.logs):
            p.mkdir(parents=True, exist_ok=True)


# ----------------------------- logging -------------------------- #

def setup_logging(*, out_dir: Path, run_label: str) -> logging.Logger:
    """
    Configure logging to both stderr (human) and a file (machine).

    The file log captures DEBUG+ with timestamps; the stderr stream shows
    INFO+ with compact formatting.

    Parameters
    ----------
    out_dir : pathlib.Path
        The run's output directory (e.g., results/<RUN>).
    run_label : str
        Identifier for the run; used in initial metadata lines.

    Returns
    -------
    logging.Logger
        Configured logger instance ('q2_amplicon_runner').
    """
    log_dir = Path(out_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "run_debug.log"

    logger = logging.getLogger("q2_amplicon_runner")
    logger.setLevel(logging.DEBUG)
    for h in list(logger.handlers):
        h.close()
    logger.handlers.clear()
    logger.propagate = False

    # ---- stderr (human) ----
    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    # ---- file (machine) ----
    file_handler = logging.FileHandler(filename=log_file, mode="w", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )

    logger.addHandler(stream_handler)
    logger.addHandler(file_handler)

    # Manifest builder messages land in the same run log.
    manifest_logger = logging.getLogger("make_manifest")
    manifest_logger.setLevel(logging.DEBUG)
    manifest_logger.handlers.clear()
    manifest_logger.propagate = False
    manifest_logger.addHandler(stream_handler)
    manifest_logger.addHandler(file_handler)

    # Context banner
    logger.info("Run label: %s", run_label)
    logger.info("Output directory: %s", Path(out_dir).resolve())
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))

    return logger


def log_section(*, logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    logger: logging.Logger,
    prefix: str = "",
    extra_msg: str | None = None,
) -> None:
    """
    Log the current and peak memory usage (resident set size), plus elapsed time.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance to emit the message.
    prefix : str
        Optional prefix (e.g., 'START', 'END', or a pipeline stage label).
    extra_msg : str | None
        Optional extra text appended to the log message.
    """
    import resource  # local import to avoid platform issues

    cur_gb = psutil.Process(os.getpid()).memory_info().rss / (1024 ** 3)

    peak_kb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports KB, macOS reports bytes
    if sys.platform.startswith("linux"):
        peak_gb = peak_kb / (1024 ** 2)
    else:
        peak_gb = peak_kb / (1024 ** 3)

    elapsed_min = max(0.0, time.time() - _SCRIPT_START_TIME) / 60.0

    parts = []
    if prefix:
        parts.append(prefix.strip())
    parts.append(f"RAM: {cur_gb:.2f} GB")
    parts.append(f"Peak: {peak_gb:.2f} GB")
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)

    logger.info(" | ".join(parts))


# ----------------------------- helpers ----------------------------- #
def run_cmd(*, cmd: list[str], log_file: Path, logger: Optional[logging.Logger] = None) -> None:
    """
    Run a command with all stdout/stderr tee'd to a step log.

    Parameters
    ----------
    cmd : list of str
        Command tokens (no shell=True).
    log_file : pathlib.Path
        Path to the step-specific log file.
    logger : Optional[logging.Logger]
        If provided, logs the command start and destination log file.

    Raises
    ------
    subprocess.CalledProcessError
        If the command exits non-zero.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if logger is not None:
        logger.info("▶ %s", " ".join(cmd))
        logger.debug("Step log: %s", log_file)

    with log_file.open("a", encoding="utf-8") as lf:
        lf.write("$ " + " ".join(cmd) + "\n")
        lf.flush()
        subprocess.run(cmd, stdout=lf, stderr=lf, check=True)


def write_report_row(*, report_path: Path, fields: Dict[str, str]) -> None:
    """Append a single row to the run report TSV, creating header if needed."""
    report_path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not report_path.exists()
    with report_path.open("a", encoding="utf-8") as fh:
        if is_new:
            fh.write("\t".join(fields.keys()) + "\n")
        fh.write("\t".join(str(v) for v in fields.values()) + "\n")


def ensure_qiime2_tmp(*, tmp_root: Path) -> Path:
    """
    Ensure QIIME 2 temp cache directory exists with sticky-world-writable perms (01777).

    Raises
    ------
    PermissionError
        If the filesystem rejects the required mode.
    """
    qdir = Path(tmp_root) / "qiime2"
    qdir.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(qdir, 0o1777)
    except PermissionError as e:
        raise PermissionError(
            f"Cannot set sticky perms on {qdir}. Try running `chmod 1777 {qdir}` manually "
            "or choose a different --out_dir on a filesystem that supports the sticky bit."
        ) from e
    return qdir


def verify_manifest_files(*, manifest_path: Path, logger: logging.Logger) -> Dict[str, int]:
    """
    Re-read the written manifest and check every FASTQ it lists exists.

    Returns
    -------
    dict
        Number of files per read direction.

    Raises
    ------
    FileNotFoundError
        If any referenced FASTQ is missing.
    """
    manifest = read_manifest(manifest_path)
    df = pd.DataFrame(
        {
            "sample_id": [r.sample_id for r in manifest],
            "path": [r.file_path for r in manifest],
            "direction": [r.direction.value for r in manifest],
        }
    )
    missing = df.loc[df["path"].map(lambda p: not p.exists()), "path"]
    if not missing.empty:
        raise FileNotFoundError(
            "Manifest lists missing FASTQs: " + ", ".join(sorted(str(p) for p in missing))
        )
    counts = {str(k): int(v) for k, v in df["direction"].value_counts(sort=False).items()}
    for direction, n in counts.items():
        logger.info("Manifest %s reads: %d", direction, n)
    return counts


# ----------------------------- QIIME steps ----------------------------- #
def qiime_import_reads(
    *, manifest: Path, semantic_type: str, input_format: str, out_artifact: Path,
    logs: Path, logger: Optional[logging.Logger] = None,
) -> None:
    """Import FASTQ reads described by a manifest."""
    cmd = [
        "qiime", "tools", "import",
        "--input-path", str(manifest),
        "--output-path", str(out_artifact),
        "--type", semantic_type,
        "--input-format", input_format,
    ]
    run_cmd(cmd=cmd, log_file=logs / "01_import.log", logger=logger)


def qiime_demux_summary(
    *, demux_qza: Path, out_qzv: Path, logs: Path, log_name: str = "02_demux_summarize.log",
    logger: Optional[logging.Logger] = None,
) -> None:
    """Create a demultiplexing summary visualisation (quality plots)."""
    cmd = [
        "qiime", "demux", "summarize",
        "--i-data", str(demux_qza),
        "--o-visualization", str(out_qzv),
    ]
    run_cmd(cmd=cmd, log_file=logs / log_name, logger=logger)


def qiime_cutadapt_trim_paired(
    *, in_qza: Path, out_qza: Path, front_f: str, front_r: str, error_rate: float,
    cores: int, discard_untrimmed: bool, logs: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Trim primers from paired reads with q2-cutadapt."""
    cmd = [
        "qiime", "cutadapt", "trim-paired",
        "--i-demultiplexed-sequences", str(in_qza),
        "--p-front-f", front_f,
        "--p-front-r", front_r,
        "--p-error-rate", f"{error_rate:g}",
        "--p-cores", str(cores),
        "--o-trimmed-sequences", str(out_qza),
    ]
    if discard_untrimmed:
        cmd.append("--p-discard-untrimmed")
    cmd.append("--verbose")
    run_cmd(cmd=cmd, log_file=logs / "03_cutadapt_trim_paired.log", logger=logger)


def qiime_dada2_denoise_paired(
    *, in_qza: Path, table_qza: Path, repseqs_qza: Path, stats_qza: Path,
    trunc_len_f: int, trunc_len_r: int, min_fold_parent_over_abundance: float,
    n_reads_learn: int, threads: int, logs: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Run DADA2 paired-end denoising in QIIME 2."""
    cmd = [
        "qiime", "dada2", "denoise-paired",
        "--i-demultiplexed-seqs", str(in_qza),
        "--p-trunc-len-f", str(trunc_len_f),
        "--p-trunc-len-r", str(trunc_len_r),
        "--p-min-fold-parent-over-abundance", f"{min_fold_parent_over_abundance:g}",
        "--p-n-reads-learn", str(n_reads_learn),
        "--p-n-threads", str(threads),
        "--o-representative-sequences", str(repseqs_qza),
        "--o-table", str(table_qza),
        "--o-denoising-stats", str(stats_qza),
        "--verbose",
    ]
    run_cmd(cmd=cmd, log_file=logs / "04_dada2_paired.log", logger=logger)


def qiime_metadata_tabulate(
    *, input_qza: Path, out_qzv: Path, log_file: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Tabulate a stats artefact as a visualisation."""
    cmd = [
        "qiime", "metadata", "tabulate",
        "--m-input-file", str(input_qza),
        "--o-visualization", str(out_qzv),
    ]
    run_cmd(cmd=cmd, log_file=log_file, logger=logger)


def qiime_subsample_single(
    *, in_qza: Path, out_qza: Path, fraction: float, logs: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Randomly subsample single-end reads."""
    cmd = [
        "qiime", "demux", "subsample-single",
        "--i-sequences", str(in_qza),
        "--p-fraction", f"{fraction:g}",
        "--o-subsampled-sequences", str(out_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "03_subsample_single.log", logger=logger)


def qiime_quality_filter(
    *, in_qza: Path, out_qza: Path, stats_qza: Path, logs: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Filter reads on q-score."""
    cmd = [
        "qiime", "quality-filter", "q-score",
        "--i-demux", str(in_qza),
        "--o-filtered-sequences", str(out_qza),
        "--o-filter-stats", str(stats_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "04_quality_filter.log", logger=logger)


def qiime_vsearch_dereplicate(
    *, in_qza: Path, table_qza: Path, repseqs_qza: Path, logs: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Dereplicate filtered single-end reads into a table and sequences."""
    cmd = [
        "qiime", "vsearch", "dereplicate-sequences",
        "--i-sequences", str(in_qza),
        "--o-dereplicated-table", str(table_qza),
        "--o-dereplicated-sequences", str(repseqs_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "05_vsearch_dereplicate.log", logger=logger)


def qiime_feature_summaries(
    *, table_qza: Path, repseqs_qza: Path, visuals: Path, logs: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Summarise the feature table and tabulate representative sequences."""
    run_cmd(
        cmd=[
            "qiime", "feature-table", "summarize",
            "--i-table", str(table_qza),
            "--o-visualization", str(visuals / "table.qzv"),
        ],
        log_file=logs / "06_feature_table_summarize.log",
        logger=logger,
    )
    run_cmd(
        cmd=[
            "qiime", "feature-table", "tabulate-seqs",
            "--i-data", str(repseqs_qza),
            "--o-visualization", str(visuals / "rep-seqs.qzv"),
        ],
        log_file=logs / "06_tabulate_seqs.log",
        logger=logger,
    )


def qiime_import_reference(
    *, fasta: Path, taxonomy_tsv: Path, out_reads_qza: Path, out_taxonomy_qza: Path,
    logs: Path, logger: Optional[logging.Logger] = None,
) -> None:
    """Import reference sequences and a headerless taxonomy TSV."""
    run_cmd(
        cmd=[
            "qiime", "tools", "import",
            "--type", "FeatureData[Sequence]",
            "--input-path", str(fasta),
            "--output-path", str(out_reads_qza),
        ],
        log_file=logs / "07_import_reference_reads.log",
        logger=logger,
    )
    run_cmd(
        cmd=[
            "qiime", "tools", "import",
            "--type", "FeatureData[Taxonomy]",
            "--input-format", "HeaderlessTSVTaxonomyFormat",
            "--input-path", str(taxonomy_tsv),
            "--output-path", str(out_taxonomy_qza),
        ],
        log_file=logs / "07_import_reference_taxonomy.log",
        logger=logger,
    )


def qiime_fit_naive_bayes(
    *, reference_reads_qza: Path, reference_taxonomy_qza: Path, classifier_qza: Path,
    logs: Path, logger: Optional[logging.Logger] = None,
) -> None:
    """Train a Naive Bayes classifier on the imported reference."""
    cmd = [
        "qiime", "feature-classifier", "fit-classifier-naive-bayes",
        "--i-reference-reads", str(reference_reads_qza),
        "--i-reference-taxonomy", str(reference_taxonomy_qza),
        "--o-classifier", str(classifier_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "08_fit_classifier.log", logger=logger)


def qiime_taxonomy_sklearn(
    *, repseqs_qza: Path, classifier_qza: Path, taxonomy_qza: Path, n_jobs: int,
    confidence: Optional[float], logs: Path, logger: Optional[logging.Logger] = None,
) -> None:
    """Assign taxonomy using a trained sklearn classifier artefact."""
    cmd = ["qiime", "feature-classifier", "classify-sklearn", "--p-n-jobs", str(n_jobs)]
    if confidence is not None:
        cmd += ["--p-confidence", f"{confidence:g}"]
    cmd += [
        "--i-classifier", str(classifier_qza),
        "--i-reads", str(repseqs_qza),
        "--o-classification", str(taxonomy_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "09_taxonomy_sklearn.log", logger=logger)


def qiime_taxonomy_vsearch(
    *, repseqs_qza: Path, reference_reads_qza: Path, reference_taxonomy_qza: Path,
    taxonomy_qza: Path, search_results_qza: Path, perc_identity: float, threads: int,
    logs: Path, logger: Optional[logging.Logger] = None,
) -> None:
    """Assign taxonomy by VSEARCH consensus against the reference."""
    cmd = [
        "qiime", "feature-classifier", "classify-consensus-vsearch",
        "--i-query", str(repseqs_qza),
        "--i-reference-reads", str(reference_reads_qza),
        "--i-reference-taxonomy", str(reference_taxonomy_qza),
        "--p-perc-identity", f"{perc_identity:g}",
        "--p-threads", str(threads),
        "--o-classification", str(taxonomy_qza),
        "--o-search-results", str(search_results_qza),
        "--verbose",
    ]
    run_cmd(cmd=cmd, log_file=logs / "09_taxonomy_vsearch.log", logger=logger)


def qiime_taxa_barplot(
    *, table_qza: Path, taxonomy_qza: Path, out_qzv: Path, log_file: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Render a taxonomic bar plot."""
    cmd = [
        "qiime", "taxa", "barplot",
        "--i-table", str(table_qza),
        "--i-taxonomy", str(taxonomy_qza),
        "--o-visualization", str(out_qzv),
    ]
    run_cmd(cmd=cmd, log_file=log_file, logger=logger)


def qiime_taxa_filter_table(
    *, table_qza: Path, taxonomy_qza: Path, include: str, out_qza: Path, logs: Path,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Keep features whose taxonomy contains ``include``."""
    cmd = [
        "qiime", "taxa", "filter-table",
        "--i-table", str(table_qza),
        "--i-taxonomy", str(taxonomy_qza),
        "--p-include", include,
        "--o-filtered-table", str(out_qza),
    ]
    run_cmd(cmd=cmd, log_file=logs / "10_taxa_filter_table.log", logger=logger)


# ----------------------------- main orchestration ----------------------------- #
def resolve_profile(args: argparse.Namespace) -> Profile:
    """Apply command-line overrides to the selected profile defaults."""
    profile = PROFILES[args.profile]
    overrides = {}
    for name in ("trunc_len_f", "trunc_len_r", "taxonomy_method", "confidence"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    if args.manifest_format is not None:
        overrides["manifest_format"] = ManifestFormat(args.manifest_format)
    if args.filter_include is not None:
        overrides["filter_include"] = args.filter_include or None
    return replace(profile, **overrides)


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface for the runner.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser with named-only arguments.
    """
    p = argparse.ArgumentParser(
        description="QIIME 2 runner for 23S–5S amplicon data. Named arguments only.",
        allow_abbrev=False,
    )
    p.add_argument("--run_label", required=True, type=str, help="Run label.")
    p.add_argument("--reads_dir", required=True, type=Path, help="Directory of FASTQ files.")
    p.add_argument("--out_dir", required=True, type=Path, help="Output directory for the run.")
    p.add_argument("--profile", choices=sorted(PROFILES), default="illumina",
                   help="Runbook variant (default: illumina).")
    # Manifest
    p.add_argument("--manifest_format", choices=[f.value for f in ManifestFormat],
                   default=None,
                   help="Manifest layout (profile default if omitted).")
    p.add_argument("--delimiter", default="_", type=str, help="Sample-id delimiter.")
    p.add_argument("--forward_marker", default="_R1", type=str, help="Forward read marker.")
    p.add_argument("--reverse_marker", default="_R2", type=str, help="Reverse read marker.")
    p.add_argument("--extension", action="append", default=None, dest="extensions",
                   help="Accepted FASTQ extension (repeatable; default .fastq.gz).")
    p.add_argument("--strict_sample_ids", default=False,
                   type=lambda x: str(x).lower() in {"1", "true", "yes"},
                   help="Fail on filenames lacking the delimiter.")
    # Primer trimming (miseq)
    p.add_argument("--cutadapt_f", default=MISEQ_PRIMER_F, type=str, help="Forward primer.")
    p.add_argument("--cutadapt_r", default=MISEQ_PRIMER_R, type=str, help="Reverse primer.")
    p.add_argument("--cutadapt_error_rate", default=0.0, type=float, help="cutadapt error rate.")
    p.add_argument("--cutadapt_discard_untrimmed", default=True,
                   type=lambda x: str(x).lower() in {"1", "true", "yes"},
                   help="Discard reads lacking primer matches.")
    # DADA2
    p.add_argument("--trunc_len_f", default=None, type=int, help="DADA2 trunc-len F.")
    p.add_argument("--trunc_len_r", default=None, type=int, help="DADA2 trunc-len R.")
    p.add_argument("--min_fold_parent_over_abundance", default=2.0, type=float,
                   help="DADA2 chimera min fold parent over abundance.")
    p.add_argument("--n_reads_learn", default=500000, type=int,
                   help="DADA2 reads used to train the error model.")
    p.add_argument("--threads", default=50, type=int, help="DADA2 threads.")
    # Nanopore
    p.add_argument("--subsample_fraction", default=0.1, type=float,
                   help="Fraction of nanopore reads kept by subsampling.")
    # Taxonomy
    p.add_argument("--taxonomy_method", choices=["sklearn", "vsearch"], default=None,
                   help="Override the profile's taxonomy method.")
    p.add_argument("--classifier_qza", default=None, type=Path,
                   help="Pre-trained sklearn classifier (.qza).")
    p.add_argument("--reference_fasta", default=None, type=Path,
                   help="Reference sequences FASTA.")
    p.add_argument("--reference_taxonomy", default=None, type=Path,
                   help="Reference taxonomy (headerless TSV).")
    p.add_argument("--reference_label", default="reference", type=str,
                   help="Base name for reference artefacts.")
    p.add_argument("--confidence", default=None, type=float,
                   help="classify-sklearn confidence (profile default if omitted).")
    p.add_argument("--perc_identity", default=0.95, type=float,
                   help="VSEARCH consensus percent identity.")
    p.add_argument("--jobs", default=48, type=int,
                   help="Jobs/cores for cutadapt, classify-sklearn and VSEARCH.")
    p.add_argument("--filter_include", default=None, type=str,
                   help="Taxon substring for filter-table ('' disables).")
    return p


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the runner.

    Parses arguments, prepares folders and the manifest, then runs the
    profile's QIIME 2 steps in order.
    """
    args = build_arg_parser().parse_args(argv)
    args.out_dir = Path(args.out_dir).expanduser().resolve()
    logger = setup_logging(out_dir=args.out_dir, run_label=args.run_label)

    logger.info("Start time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(_SCRIPT_START_TIME)))
    log_memory_usage(logger=logger, prefix="START")

    profile = resolve_profile(args)
    logger.info("Profile=%s | mode=%s | taxonomy=%s", profile.name, profile.mode.value,
                profile.taxonomy_method)

    paths = Paths(args.out_dir)
    paths.mkdirs()

    tmp = paths.root / "tmp"
    tmp.mkdir(parents=True, exist_ok=True)
    os.environ["TMPDIR"] = str(tmp)
    os.environ["TEMP"] = str(tmp)
    os.environ["TMP"] = str(tmp)
    os.environ["QIIMETMPDIR"] = str(tmp)
    os.environ["XDG_CACHE_HOME"] = str(paths.root / ".cache")
    q2tmp = ensure_qiime2_tmp(tmp_root=tmp)
    logger.info("QIIME2_TMP=%s", q2tmp)

    have_reference = bool(args.reference_fasta and args.reference_taxonomy)
    if bool(args.reference_fasta) ^ bool(args.reference_taxonomy):
        logger.error("Provide BOTH --reference_fasta and --reference_taxonomy (or neither).")
        sys.exit(2)
    if profile.taxonomy_method == "vsearch" and not have_reference:
        logger.error("VSEARCH taxonomy needs --reference_fasta and --reference_taxonomy.")
        sys.exit(2)

    # 1) Manifest
    log_section(logger=logger, title="Manifest")
    try:
        config = ManifestConfig(
            delimiter=args.delimiter,
            mode=profile.mode,
            output_format=profile.manifest_format,
            forward_marker=args.forward_marker,
            reverse_marker=args.reverse_marker,
            extensions=tuple(args.extensions or (".fastq.gz",)),
            strict_sample_ids=bool(args.strict_sample_ids),
        )
        semantic_type, input_format = qiime_import_spec(config)
        manifest, _ = generate_manifest(
            reads_dir=args.reads_dir, out_path=paths.manifest, config=config
        )
        verify_manifest_files(manifest_path=paths.manifest, logger=logger)
    except (ManifestError, ValueError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        sys.exit(2)

    # 2) Import + demux summary
    log_section(logger=logger, title="Import")
    demux = paths.artifacts / "demux.qza"
    qiime_import_reads(
        manifest=paths.manifest, semantic_type=semantic_type, input_format=input_format,
        out_artifact=demux, logs=paths.logs, logger=logger,
    )
    qiime_demux_summary(demux_qza=demux, out_qzv=paths.visuals / "demux.qzv",
                        logs=paths.logs, logger=logger)

    table_qza = paths.artifacts / "table.qza"
    repseqs_qza = paths.artifacts / "rep-seqs.qza"

    # 3-4) Trim + denoise
    log_section(logger=logger, title="Denoise")
    if profile.denoiser == "dada2_paired":
        denoise_in = demux
        if profile.trim_primers:
            denoise_in = paths.artifacts / "trimmed-demux.qza"
            qiime_cutadapt_trim_paired(
                in_qza=demux, out_qza=denoise_in,
                front_f=args.cutadapt_f, front_r=args.cutadapt_r,
                error_rate=args.cutadapt_error_rate, cores=args.jobs,
                discard_untrimmed=bool(args.cutadapt_discard_untrimmed),
                logs=paths.logs, logger=logger,
            )
            qiime_demux_summary(
                demux_qza=denoise_in, out_qzv=paths.visuals / "trimmed-demux.qzv",
                logs=paths.logs, log_name="03_demux_summarize_trimmed.log", logger=logger,
            )
        stats_qza = paths.artifacts / "denoise-stats.qza"
        qiime_dada2_denoise_paired(
            in_qza=denoise_in, table_qza=table_qza, repseqs_qza=repseqs_qza,
            stats_qza=stats_qza,
            trunc_len_f=profile.trunc_len_f, trunc_len_r=profile.trunc_len_r,
            min_fold_parent_over_abundance=args.min_fold_parent_over_abundance,
            n_reads_learn=args.n_reads_learn, threads=args.threads,
            logs=paths.logs, logger=logger,
        )
        qiime_metadata_tabulate(
            input_qza=stats_qza, out_qzv=paths.visuals / "denoise-stats.qzv",
            log_file=paths.logs / "05_denoise_stats.log", logger=logger,
        )
    elif profile.denoiser == "vsearch_dereplicate":
        subset = paths.artifacts / "demux-subset.qza"
        filtered = paths.artifacts / "filtered.qza"
        filter_stats = paths.artifacts / "filter-stats.qza"
        qiime_subsample_single(in_qza=demux, out_qza=subset, fraction=args.subsample_fraction,
                               logs=paths.logs, logger=logger)
        qiime_quality_filter(in_qza=subset, out_qza=filtered, stats_qza=filter_stats,
                             logs=paths.logs, logger=logger)
        qiime_metadata_tabulate(
            input_qza=filter_stats, out_qzv=paths.visuals / "filter-stats.qzv",
            log_file=paths.logs / "04_filter_stats.log", logger=logger,
        )
        qiime_vsearch_dereplicate(in_qza=filtered, table_qza=table_qza, repseqs_qza=repseqs_qza,
                                  logs=paths.logs, logger=logger)
    else:
        raise ValueError(f"Unknown denoiser: {profile.denoiser}")

    # 5) Feature summaries
    qiime_feature_summaries(table_qza=table_qza, repseqs_qza=repseqs_qza,
                            visuals=paths.visuals, logs=paths.logs, logger=logger)

    # 6) Reference
    ref_reads = paths.reference / f"{args.reference_label}.qza"
    ref_tax = paths.reference / f"{args.reference_label}_tax.qza"
    if have_reference:
        log_section(logger=logger, title="Reference")
        qiime_import_reference(
            fasta=args.reference_fasta, taxonomy_tsv=args.reference_taxonomy,
            out_reads_qza=ref_reads, out_taxonomy_qza=ref_tax,
            logs=paths.logs, logger=logger,
        )

    # 7) Taxonomy
    log_section(logger=logger, title="Taxonomy")
    taxonomy_qza: Optional[Path] = paths.taxonomy / "taxonomy.qza"
    if profile.taxonomy_method == "vsearch":
        qiime_taxonomy_vsearch(
            repseqs_qza=repseqs_qza, reference_reads_qza=ref_reads,
            reference_taxonomy_qza=ref_tax, taxonomy_qza=taxonomy_qza,
            search_results_qza=paths.taxonomy / "search-results.qza",
            perc_identity=args.perc_identity, threads=args.jobs,
            logs=paths.logs, logger=logger,
        )
    else:
        classifier = args.classifier_qza
        if classifier is None and have_reference:
            classifier = paths.reference / f"{args.reference_label}_classifier.qza"
            qiime_fit_naive_bayes(
                reference_reads_qza=ref_reads, reference_taxonomy_qza=ref_tax,
                classifier_qza=classifier, logs=paths.logs, logger=logger,
            )
        if classifier is not None:
            qiime_taxonomy_sklearn(
                repseqs_qza=repseqs_qza, classifier_qza=Path(classifier),
                taxonomy_qza=taxonomy_qza, n_jobs=args.jobs, confidence=profile.confidence,
                logs=paths.logs, logger=logger,
            )
        else:
            logger.warning("No classifier or reference provided; skipping taxonomy assignment.")
            taxonomy_qza = None

    # 8) Bar plots
    if taxonomy_qza is not None:
        qiime_taxa_barplot(
            table_qza=table_qza, taxonomy_qza=taxonomy_qza,
            out_qzv=paths.visuals / "taxa-bar-plot.qzv",
            log_file=paths.logs / "10_taxa_barplot.log", logger=logger,
        )
        if profile.filter_include:
            filtered_table = paths.taxonomy / "filtered-table.qza"
            qiime_taxa_filter_table(
                table_qza=table_qza, taxonomy_qza=taxonomy_qza,
                include=profile.filter_include, out_qza=filtered_table,
                logs=paths.logs, logger=logger,
            )
            qiime_taxa_barplot(
                table_qza=filtered_table, taxonomy_qza=taxonomy_qza,
                out_qzv=paths.visuals / "filtered-taxa-bar-plot.qzv",
                log_file=paths.logs / "10_taxa_barplot_filtered.log", logger=logger,
            )

    # 9) Minimal run report
    write_report_row(
        report_path=paths.report_tsv,
        fields={
            "run_label": args.run_label,
            "profile": profile.name,
            "mode": profile.mode.value,
            "manifest_format": config.output_format.value,
            "samples": str(len(manifest.sample_ids())),
            "files": str(len(manifest)),
            "taxonomy": profile.taxonomy_method if taxonomy_qza is not None else "none",
        },
    )
    end_ts = time.time()
    logger.info("End time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(end_ts)))
    log_memory_usage(logger=logger, prefix="END", extra_msg="Pipeline complete")


if __name__ == "__main__":
    main()
