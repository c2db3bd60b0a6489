from __future__ import annotations

import logging
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _reset_loggers():
    yield
    for name in ("make_manifest", "q2_amplicon_runner"):
        log = logging.getLogger(name)
        for h in list(log.handlers):
            h.close()
        log.handlers.clear()
        log.propagate = True
        log.setLevel(logging.NOTSET)


@pytest.fixture
def paired_reads(tmp_path: Path) -> Path:
    reads = tmp_path / "reads"
    reads.mkdir()
    for name in (
        "sampleB_L001_R2.fastq.gz",
        "sampleA_L001_R1.fastq.gz",
        "sampleB_L001_R1.fastq.gz",
        "sampleA_L001_R2.fastq.gz",
    ):
        (reads / name).write_bytes(b"")
    return reads
