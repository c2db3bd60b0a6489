from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List

import pytest

import q2_amplicon_runner as runner


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> List[List[str]]:
    """Record every command instead of running it."""
    recorded: List[List[str]] = []

    def fake_run(cmd, **kwargs):
        recorded.append(list(cmd))
        return subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(runner.subprocess, "run", fake_run)
    # main() points these at <out_dir>/tmp; restore them afterwards.
    for var in ("TMPDIR", "TEMP", "TMP", "QIIMETMPDIR", "XDG_CACHE_HOME"):
        monkeypatch.setenv(var, str(tmp_path))
    return recorded


def _steps(calls: List[List[str]]) -> List[str]:
    return [" ".join(c[1:3]) for c in calls]


def _flag(cmd: List[str], name: str) -> str:
    return cmd[cmd.index(name) + 1]


def _find(calls: List[List[str]], step: str) -> List[str]:
    return next(c for c in calls if " ".join(c[1:3]) == step)


def test_illumina_profile_runs_runbook_in_order(
    calls: List[List[str]], paired_reads: Path, tmp_path: Path
) -> None:
    out = tmp_path / "results"
    runner.main([
        "--run_label", "run1",
        "--reads_dir", str(paired_reads),
        "--out_dir", str(out),
        "--reference_fasta", str(tmp_path / "ref.fasta"),
        "--reference_taxonomy", str(tmp_path / "ref.tax"),
    ])

    assert _steps(calls) == [
        "tools import",
        "demux summarize",
        "dada2 denoise-paired",
        "metadata tabulate",
        "feature-table summarize",
        "feature-table tabulate-seqs",
        "tools import",
        "tools import",
        "feature-classifier fit-classifier-naive-bayes",
        "feature-classifier classify-sklearn",
        "taxa barplot",
        "taxa filter-table",
        "taxa barplot",
    ]

    imp = calls[0]
    assert _flag(imp, "--input-format") == "PairedEndFastqManifestPhred33"
    assert _flag(imp, "--type") == "SampleData[PairedEndSequencesWithQuality]"

    dada2 = _find(calls, "dada2 denoise-paired")
    assert _flag(dada2, "--p-trunc-len-f") == "148"
    assert _flag(dada2, "--p-trunc-len-r") == "148"
    assert _flag(dada2, "--p-min-fold-parent-over-abundance") == "2"
    assert _flag(dada2, "--p-n-reads-learn") == "500000"
    assert _flag(dada2, "--p-n-threads") == "50"

    classify = _find(calls, "feature-classifier classify-sklearn")
    assert _flag(classify, "--p-confidence") == "0.99"
    assert _flag(classify, "--p-n-jobs") == "48"
    assert _flag(classify, "--i-classifier").endswith("reference_classifier.qza")

    assert _flag(_find(calls, "taxa filter-table"), "--p-include") == "_"

    manifest = out.resolve() / "manifest"
    assert manifest.read_text(encoding="utf-8").splitlines()[0] == (
        "sample-id,absolute-filepath,direction"
    )
    report = (out / "run_report.tsv").read_text(encoding="utf-8").splitlines()
    assert report[0].split("\t") == [
        "run_label", "profile", "mode", "manifest_format", "samples", "files", "taxonomy",
    ]
    assert report[1].split("\t") == [
        "run1", "illumina", "paired", "csv_legacy", "2", "4", "sklearn",
    ]
    assert (out / "logs" / "run_debug.log").exists()
    assert (out / "logs" / "01_import.log").read_text(encoding="utf-8").startswith("$ qiime tools import")


def test_miseq_profile_trims_primers_first(
    calls: List[List[str]], paired_reads: Path, tmp_path: Path
) -> None:
    runner.main([
        "--run_label", "miseq",
        "--profile", "miseq",
        "--reads_dir", str(paired_reads),
        "--out_dir", str(tmp_path / "out"),
        "--classifier_qza", str(tmp_path / "classifier.qza"),
    ])

    steps = _steps(calls)
    assert steps[:5] == [
        "tools import",
        "demux summarize",
        "cutadapt trim-paired",
        "demux summarize",
        "dada2 denoise-paired",
    ]
    assert "feature-classifier fit-classifier-naive-bayes" not in steps

    trim = _find(calls, "cutadapt trim-paired")
    assert _flag(trim, "--p-front-f") == "TNNNNNNNNNNNNNNNNNNC"
    assert _flag(trim, "--p-front-r") == "GNNNNNNNNNNNNNNNNNT"
    assert _flag(trim, "--p-error-rate") == "0"
    assert "--p-discard-untrimmed" in trim

    dada2 = _find(calls, "dada2 denoise-paired")
    assert _flag(dada2, "--i-demultiplexed-seqs").endswith("trimmed-demux.qza")
    assert _flag(dada2, "--p-trunc-len-f") == "280"


def test_illumina_blast_profile_uses_vsearch_consensus(
    calls: List[List[str]], paired_reads: Path, tmp_path: Path
) -> None:
    runner.main([
        "--run_label", "blast",
        "--profile", "illumina_blast",
        "--reads_dir", str(paired_reads),
        "--out_dir", str(tmp_path / "out"),
        "--reference_fasta", str(tmp_path / "ref.fasta"),
        "--reference_taxonomy", str(tmp_path / "ref.tax"),
    ])

    steps = _steps(calls)
    assert "feature-classifier classify-sklearn" not in steps
    assert steps[-2:] == ["feature-classifier classify-consensus-vsearch", "taxa barplot"]
    vsearch = _find(calls, "feature-classifier classify-consensus-vsearch")
    assert _flag(vsearch, "--p-perc-identity") == "0.95"
    assert _flag(vsearch, "--p-threads") == "48"


def test_illumina_blast_without_reference_exits(
    calls: List[List[str]], paired_reads: Path, tmp_path: Path
) -> None:
    with pytest.raises(SystemExit) as exc:
        runner.main([
            "--run_label", "blast",
            "--profile", "illumina_blast",
            "--reads_dir", str(paired_reads),
            "--out_dir", str(tmp_path / "out"),
        ])
    assert exc.value.code == 2
    assert calls == []


def test_nanopore_profile_single_end_v2(calls: List[List[str]], tmp_path: Path) -> None:
    reads = tmp_path / "nanopore"
    reads.mkdir()
    for name in ("barcode01_pass.fastq.gz", "barcode02_pass.fastq.gz"):
        (reads / name).write_bytes(b"")

    runner.main([
        "--run_label", "ont",
        "--profile", "nanopore",
        "--reads_dir", str(reads),
        "--out_dir", str(tmp_path / "out"),
        "--classifier_qza", str(tmp_path / "classifier.qza"),
    ])

    assert _steps(calls) == [
        "tools import",
        "demux summarize",
        "demux subsample-single",
        "quality-filter q-score",
        "metadata tabulate",
        "vsearch dereplicate-sequences",
        "feature-table summarize",
        "feature-table tabulate-seqs",
        "feature-classifier classify-sklearn",
        "taxa barplot",
    ]
    assert _flag(calls[0], "--input-format") == "SingleEndFastqManifestPhred33V2"
    assert _flag(_find(calls, "demux subsample-single"), "--p-fraction") == "0.1"
    assert "--p-confidence" not in _find(calls, "feature-classifier classify-sklearn")


def test_taxonomy_skipped_without_classifier(
    calls: List[List[str]], paired_reads: Path, tmp_path: Path
) -> None:
    out = tmp_path / "out"
    runner.main([
        "--run_label", "notax",
        "--reads_dir", str(paired_reads),
        "--out_dir", str(out),
    ])
    steps = _steps(calls)
    assert steps[-1] == "feature-table tabulate-seqs"
    assert not any(s.startswith("taxa") for s in steps)
    assert (out / "run_report.tsv").read_text(encoding="utf-8").rstrip().endswith("\tnone")


def test_cli_overrides_profile_defaults(
    calls: List[List[str]], paired_reads: Path, tmp_path: Path
) -> None:
    runner.main([
        "--run_label", "override",
        "--reads_dir", str(paired_reads),
        "--out_dir", str(tmp_path / "out"),
        "--classifier_qza", str(tmp_path / "classifier.qza"),
        "--trunc_len_f", "200",
        "--confidence", "0.7",
        "--filter_include", "",
    ])
    dada2 = _find(calls, "dada2 denoise-paired")
    assert _flag(dada2, "--p-trunc-len-f") == "200"
    assert _flag(dada2, "--p-trunc-len-r") == "148"
    assert _flag(_find(calls, "feature-classifier classify-sklearn"), "--p-confidence") == "0.7"
    assert "taxa filter-table" not in _steps(calls)


def test_paired_long_tsv_is_rejected_before_any_qiime_call(
    calls: List[List[str]], paired_reads: Path, tmp_path: Path
) -> None:
    with pytest.raises(SystemExit) as exc:
        runner.main([
            "--run_label", "bad",
            "--reads_dir", str(paired_reads),
            "--out_dir", str(tmp_path / "out"),
            "--manifest_format", "tsv_v2",
        ])
    assert exc.value.code == 2
    assert calls == []


def test_empty_reads_dir_exits(calls: List[List[str]], tmp_path: Path) -> None:
    reads = tmp_path / "empty"
    reads.mkdir()
    with pytest.raises(SystemExit) as exc:
        runner.main([
            "--run_label", "empty",
            "--reads_dir", str(reads),
            "--out_dir", str(tmp_path / "out"),
        ])
    assert exc.value.code == 2
    assert not (tmp_path / "out" / "manifest").exists()


def test_failed_qiime_step_propagates(
    monkeypatch: pytest.MonkeyPatch, paired_reads: Path, tmp_path: Path
) -> None:
    def failing_run(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd)

    monkeypatch.setattr(runner.subprocess, "run", failing_run)
    for var in ("TMPDIR", "TEMP", "TMP", "QIIMETMPDIR", "XDG_CACHE_HOME"):
        monkeypatch.setenv(var, str(tmp_path))
    with pytest.raises(subprocess.CalledProcessError):
        runner.main([
            "--run_label", "fail",
            "--reads_dir", str(paired_reads),
            "--out_dir", str(tmp_path / "out"),
        ])


def test_verify_manifest_files_detects_missing_fastq(tmp_path: Path) -> None:
    manifest = tmp_path / "manifest"
    manifest.write_text(
        "sample-id,absolute-filepath,direction\n"
        f"s1,{tmp_path}/s1_R1.fastq.gz,forward\n",
        encoding="utf-8",
    )
    logger = runner.setup_logging(out_dir=tmp_path, run_label="verify")
    with pytest.raises(FileNotFoundError, match="s1_R1.fastq.gz"):
        runner.verify_manifest_files(manifest_path=manifest, logger=logger)


def test_ensure_qiime2_tmp_sets_sticky_bit(tmp_path: Path) -> None:
    qdir = runner.ensure_qiime2_tmp(tmp_root=tmp_path)
    assert qdir == tmp_path / "qiime2"
    assert qdir.stat().st_mode & 0o1777 == 0o1777


def test_manifest_format_defaults_per_profile() -> None:
    parser = runner.build_arg_parser()
    base = ["--run_label", "x", "--reads_dir", "r", "--out_dir", "o"]

    def fmt(*extra: str) -> runner.ManifestFormat:
        return runner.resolve_profile(parser.parse_args(base + list(extra))).manifest_format

    assert fmt() is runner.ManifestFormat.CSV_LEGACY
    assert fmt("--profile", "miseq") is runner.ManifestFormat.CSV_LEGACY
    assert fmt("--profile", "nanopore") is runner.ManifestFormat.TSV_V2
    assert fmt("--profile", "nanopore", "--manifest_format", "csv_legacy") is (
        runner.ManifestFormat.CSV_LEGACY
    )


def test_manifest_logger_shares_run_handlers_without_propagating(tmp_path: Path) -> None:
    logger = runner.setup_logging(out_dir=tmp_path, run_label="handlers")
    manifest_logger = logging.getLogger("make_manifest")
    assert manifest_logger.propagate is False
    assert manifest_logger.handlers == logger.handlers


def test_resource_is_imported_lazily() -> None:
    assert "resource" not in vars(runner)
