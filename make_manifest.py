#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Create a QIIME 2 FASTQ import manifest from a directory of read files.

The sample-id is the part of the filename before the first delimiter
(default '_'), so 'sampleA_L001_R1.fastq.gz' becomes 'sampleA'.

Two read layouts are supported:

A) Paired-end:
   Files ending in <forward-marker><ext> (default '_R1.fastq.gz') are forward
   reads, files ending in <reverse-marker><ext> (default '_R2.fastq.gz') are
   reverse reads.

B) Single-end:
   Every file ending in an accepted extension is a forward read (e.g.
   nanopore runs).

Three output layouts are supported:

- csv_legacy     sample-id,absolute-filepath,direction
- tsv_v2         sample-id<TAB>absolute-filepath<TAB>direction
- tsv_paired_v2  sample-id<TAB>forward-absolute-filepath<TAB>reverse-absolute-filepath

Forward rows always precede reverse rows, and within each direction files
are sorted by name so the output does not depend on directory listing order.

The manifest is written atomically (temporary file + rename). An existing
file at the output path is overwritten without warning.
All arguments are named (no positional arguments).
"""

from __future__ import annotations

import argparse
import csv
import io
import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import pandas as pd


logger = logging.getLogger("make_manifest")

SAMPLE_ID_COLUMN = "sample-id"
FILEPATH_COLUMN = "absolute-filepath"
DIRECTION_COLUMN = "direction"
FORWARD_FILEPATH_COLUMN = "forward-absolute-filepath"
REVERSE_FILEPATH_COLUMN = "reverse-absolute-filepath"

LONG_HEADER = [SAMPLE_ID_COLUMN, FILEPATH_COLUMN, DIRECTION_COLUMN]
PAIRED_V2_HEADER = [SAMPLE_ID_COLUMN, FORWARD_FILEPATH_COLUMN, REVERSE_FILEPATH_COLUMN]


class Direction(str, Enum):
    FORWARD = "forward"
    REVERSE = "reverse"


class ReadMode(str, Enum):
    PAIRED = "paired"
    SINGLE = "single"


class ManifestFormat(str, Enum):
    CSV_LEGACY = "csv_legacy"
    TSV_V2 = "tsv_v2"
    TSV_PAIRED_V2 = "tsv_paired_v2"

    @property
    def separator(self) -> str:
        return "," if self is ManifestFormat.CSV_LEGACY else "\t"

    @property
    def header(self) -> List[str]:
        return PAIRED_V2_HEADER if self is ManifestFormat.TSV_PAIRED_V2 else LONG_HEADER


# ------------------------------- errors -------------------------------- #

class ManifestError(Exception):
    """Base class for manifest generation failures."""


class DirectoryNotFoundError(ManifestError):
    """The reads directory is missing, not a directory, or unreadable."""

    def __init__(self, directory: Path, reason: str = "does not exist") -> None:
        self.directory = Path(directory)
        self.reason = reason
        super().__init__(f"Reads directory {reason}: {self.directory}")


class NoMatchingFilesError(ManifestError):
    """No file in the reads directory matched the naming convention."""

    def __init__(self, directory: Path, patterns: Sequence[str]) -> None:
        self.directory = Path(directory)
        self.patterns = tuple(patterns)
        super().__init__(
            f"No read files matching {', '.join(self.patterns)} found in: {self.directory}"
        )


class AmbiguousSampleIdError(ManifestError):
    """A sample-id could not be derived from a filename."""

    def __init__(self, filename: str, delimiter: str) -> None:
        self.filename = filename
        self.delimiter = delimiter
        super().__init__(
            f"Cannot derive a sample-id from '{filename}' using delimiter '{delimiter}'"
        )


class DuplicateSampleError(ManifestError):
    """Two files resolve to the same (sample-id, direction) pair."""

    def __init__(self, sample_id: str, direction: str, paths: Sequence[str]) -> None:
        self.sample_id = sample_id
        self.direction = direction
        self.paths = tuple(paths)
        super().__init__(
            f"Duplicate {direction} entry for sample-id '{sample_id}': "
            + ", ".join(self.paths)
        )


class IncompletePairError(ManifestError):
    """A wide paired manifest needs both reads for every sample."""

    def __init__(self, sample_ids: Sequence[str]) -> None:
        self.sample_ids = tuple(sample_ids)
        super().__init__(
            "Samples lack a forward or reverse read: " + ", ".join(self.sample_ids)
        )


class WriteError(ManifestError):
    """The manifest could not be written to its target path."""

    def __init__(self, path: Path, cause: OSError) -> None:
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"Cannot write manifest to {self.path}: {cause}")


# -------------------------------- model -------------------------------- #

@dataclass(frozen=True)
class ManifestConfig:
    """Naming convention and output layout for a manifest run.

    Attributes:
        delimiter: Separator whose first occurrence ends the sample-id.
        mode: Paired-end (R1/R2 markers) or single-end (all forward).
        output_format: Serialisation layout of the manifest.
        forward_marker: Filename marker preceding the extension on forward reads.
        reverse_marker: Filename marker preceding the extension on reverse reads.
        extensions: Accepted read-file extensions.
        strict_sample_ids: Raise instead of falling back when a filename
            contains no delimiter.
    """

    delimiter: str = "_"
    mode: ReadMode = ReadMode.PAIRED
    output_format: ManifestFormat = ManifestFormat.CSV_LEGACY
    forward_marker: str = "_R1"
    reverse_marker: str = "_R2"
    extensions: Tuple[str, ...] = (".fastq.gz",)
    strict_sample_ids: bool = False

    def __post_init__(self) -> None:
        # Accept plain strings from argparse / callers.
        object.__setattr__(self, "mode", ReadMode(self.mode))
        object.__setattr__(self, "output_format", ManifestFormat(self.output_format))
        object.__setattr__(self, "extensions", tuple(self.extensions))

        if not self.delimiter:
            raise ValueError("delimiter must be a non-empty string.")
        if not self.extensions or any(not e for e in self.extensions):
            raise ValueError("At least one non-empty file extension is required.")
        if self.mode is ReadMode.PAIRED:
            if not self.forward_marker or not self.reverse_marker:
                raise ValueError("Paired mode needs non-empty forward and reverse markers.")
            if self.forward_marker == self.reverse_marker:
                raise ValueError(
                    f"Forward and reverse markers must differ (both '{self.forward_marker}')."
                )
        elif self.output_format is ManifestFormat.TSV_PAIRED_V2:
            raise ValueError("tsv_paired_v2 output requires paired mode.")

    def patterns(self, direction: Direction) -> List[str]:
        """Return the filename suffixes that select reads of ``direction``."""
        if self.mode is ReadMode.SINGLE:
            return list(self.extensions) if direction is Direction.FORWARD else []
        marker = self.forward_marker if direction is Direction.FORWARD else self.reverse_marker
        return [marker + ext for ext in self.extensions]


@dataclass(frozen=True)
class SampleRecord:
    sample_id: str
    file_path: Path
    direction: Direction


@dataclass(frozen=True)
class Manifest:
    """Ordered, (sample-id, direction)-unique collection of sample records."""

    records: Tuple[SampleRecord, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    @property
    def forward(self) -> List[SampleRecord]:
        return [r for r in self.records if r.direction is Direction.FORWARD]

    @property
    def reverse(self) -> List[SampleRecord]:
        return [r for r in self.records if r.direction is Direction.REVERSE]

    def sample_ids(self) -> List[str]:
        """Distinct sample-ids in first-seen order."""
        return list(dict.fromkeys(r.sample_id for r in self.records))

    def file_paths(self) -> FrozenSet[Path]:
        return frozenset(r.file_path for r in self.records)

    def unpaired_samples(self) -> List[str]:
        """Sample-ids present in only one direction."""
        fwd = {r.sample_id for r in self.forward}
        rev = {r.sample_id for r in self.reverse}
        return [s for s in self.sample_ids() if (s in fwd) != (s in rev)]


# ------------------------------ discovery ------------------------------ #

def discover_read_files(
    *,
    reads_dir: Path,
    config: ManifestConfig,
) -> Dict[Direction, List[Tuple[Path, str]]]:
    """List read files directly inside ``reads_dir`` grouped by direction.

    Hidden files and sub-directories are ignored. Files that match no
    pattern are excluded silently (logged at DEBUG). Each group is sorted
    by filename.

    Args:
        reads_dir: Directory to scan (not recursive).
        config: Naming convention to apply.

    Returns:
        Mapping ``direction -> [(absolute_path, matched_suffix), ...]``.

    Raises:
        DirectoryNotFoundError: If ``reads_dir`` is missing, not a directory
            or cannot be listed.
    """
    reads_dir = Path(reads_dir).expanduser()
    if not reads_dir.exists():
        raise DirectoryNotFoundError(reads_dir)
    if not reads_dir.is_dir():
        raise DirectoryNotFoundError(reads_dir, reason="is not a directory")
    reads_dir = reads_dir.resolve()

    try:
        entries = sorted(reads_dir.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        raise DirectoryNotFoundError(reads_dir, reason=f"is not readable ({exc.strerror})") from exc

    # Longest suffix first so '.fastq.gz' wins over '.gz'-style overlaps.
    lookup = sorted(
        ((suffix, direction) for direction in Direction for suffix in config.patterns(direction)),
        key=lambda item: len(item[0]),
        reverse=True,
    )

    found: Dict[Direction, List[Tuple[Path, str]]] = {d: [] for d in Direction}
    for entry in entries:
        if entry.name.startswith(".") or not entry.is_file():
            continue
        for suffix, direction in lookup:
            if entry.name.endswith(suffix):
                found[direction].append((entry, suffix))
                break
        else:
            logger.debug("Skipping non-matching file: %s", entry.name)
    return found


def derive_sample_id(*, filename: str, suffix: str, config: ManifestConfig) -> str:
    """Return the sample-id for ``filename``.

    The sample-id is the text before the first ``config.delimiter``. When the
    name holds no delimiter, the filename minus ``suffix`` is used and a
    warning is logged, unless ``config.strict_sample_ids`` is set.

    Args:
        filename: Bare filename (no directory).
        suffix: The pattern the file matched, e.g. '_R1.fastq.gz'.
        config: Naming convention in use.

    Returns:
        The derived sample-id.

    Raises:
        AmbiguousSampleIdError: If the derived sample-id is empty, or if the
            delimiter is missing in strict mode.
    """
    head, sep, _ = filename.partition(config.delimiter)
    if sep:
        if not head:
            raise AmbiguousSampleIdError(filename, config.delimiter)
        return head

    if config.strict_sample_ids:
        raise AmbiguousSampleIdError(filename, config.delimiter)
    stem = filename[: -len(suffix)] if suffix and filename.endswith(suffix) else filename
    if not stem:
        raise AmbiguousSampleIdError(filename, config.delimiter)
    logger.warning(
        "No '%s' in filename '%s'; using '%s' as sample-id.", config.delimiter, filename, stem
    )
    return stem


# ------------------------------- building ------------------------------ #

def build_manifest(*, reads_dir: Path, config: ManifestConfig) -> Manifest:
    """Turn a directory listing into a manifest.

    Forward records precede reverse records; within each direction the order
    is the sorted filename order.

    Args:
        reads_dir: Directory containing the read files.
        config: Naming convention and layout.

    Returns:
        The populated ``Manifest``.

    Raises:
        DirectoryNotFoundError: If ``reads_dir`` cannot be listed.
        NoMatchingFilesError: If no file matches the naming convention.
        AmbiguousSampleIdError: If a sample-id cannot be derived.
        DuplicateSampleError: If two files share a (sample-id, direction).
    """
    found = discover_read_files(reads_dir=reads_dir, config=config)
    if not any(found.values()):
        patterns = [p for d in Direction for p in config.patterns(d)]
        raise NoMatchingFilesError(Path(reads_dir), ["*" + p for p in patterns])

    records: List[SampleRecord] = []
    seen: Dict[Tuple[str, Direction], Path] = {}
    for direction in (Direction.FORWARD, Direction.REVERSE):
        for path, suffix in found[direction]:
            sid = derive_sample_id(filename=path.name, suffix=suffix, config=config)
            key = (sid, direction)
            if key in seen:
                raise DuplicateSampleError(sid, direction.value, [str(seen[key]), str(path)])
            seen[key] = path
            records.append(SampleRecord(sample_id=sid, file_path=path, direction=direction))

    manifest = Manifest(records=tuple(records))

    if config.mode is ReadMode.PAIRED:
        unpaired = manifest.unpaired_samples()
        if unpaired:
            logger.warning(
                "%d samples lack a complete R1/R2 pair. Example: %s",
                len(unpaired), unpaired[:3],
            )

    logger.info(
        "Manifest: %d samples, %d forward and %d reverse files from %s",
        len(manifest.sample_ids()), len(manifest.forward), len(manifest.reverse),
        Path(reads_dir).expanduser().resolve(),
    )
    return manifest


def format_manifest(*, manifest: Manifest, output_format: ManifestFormat) -> str:
    """Serialise ``manifest`` in the requested layout.

    Args:
        manifest: Records to serialise.
        output_format: Target layout.

    Returns:
        The manifest text, newline-terminated.

    Raises:
        IncompletePairError: For ``tsv_paired_v2`` when a sample lacks a mate.
    """
    output_format = ManifestFormat(output_format)
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=output_format.separator, lineterminator="\n")
    writer.writerow(output_format.header)

    if output_format is ManifestFormat.TSV_PAIRED_V2:
        unpaired = manifest.unpaired_samples()
        if unpaired:
            raise IncompletePairError(unpaired)
        reverse = {r.sample_id: r.file_path for r in manifest.reverse}
        for rec in manifest.forward:
            writer.writerow([rec.sample_id, str(rec.file_path), str(reverse[rec.sample_id])])
    else:
        for rec in manifest:
            writer.writerow([rec.sample_id, str(rec.file_path), rec.direction.value])
    return buf.getvalue()


def write_manifest(*, text: str, out_path: Path) -> Path:
    """Write manifest text to ``out_path`` atomically.

    The text goes to a temporary file in the destination directory which is
    then renamed over ``out_path``. Any existing file is replaced without
    warning. On failure the temporary file is removed and the previous
    content of ``out_path`` (if any) is left untouched.

    Args:
        text: Serialised manifest.
        out_path: Destination path.

    Returns:
        The destination path.

    Raises:
        WriteError: If the destination cannot be written.
    """
    out_path = Path(out_path).expanduser()
    tmp_path: Optional[Path] = None
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with NamedTemporaryFile(
            "w",
            encoding="utf-8",
            newline="",
            dir=out_path.parent,
            prefix=f".{out_path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_path = Path(tmp.name)
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        # NamedTemporaryFile is created 0600; match a plain open().
        umask = os.umask(0)
        os.umask(umask)
        os.chmod(tmp_path, 0o666 & ~umask)
        os.replace(tmp_path, out_path)
    except OSError as exc:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise WriteError(out_path, exc) from exc
    logger.info("Manifest written: %s", out_path)
    return out_path


def generate_manifest(
    *, reads_dir: Path, out_path: Path, config: ManifestConfig
) -> Tuple[Manifest, str]:
    """Build, serialise and write a manifest in one go."""
    manifest = build_manifest(reads_dir=reads_dir, config=config)
    text = format_manifest(manifest=manifest, output_format=config.output_format)
    write_manifest(text=text, out_path=out_path)
    return manifest, text


# ------------------------------- parsing ------------------------------- #

def sniff_manifest_format(path: Path) -> ManifestFormat:
    """Infer the manifest layout from its header line."""
    with Path(path).open("r", encoding="utf-8", errors="replace") as fh:
        first = fh.readline().rstrip("\n\r")
    for fmt in ManifestFormat:
        if first.split(fmt.separator) == fmt.header:
            return fmt
    raise ValueError(f"Unrecognised manifest header in {path}: '{first}'")


def read_manifest(path: Path, *, output_format: Optional[ManifestFormat] = None) -> Manifest:
    """Parse a manifest written in any supported layout.

    Args:
        path: Manifest file.
        output_format: Layout to expect; sniffed from the header if ``None``.

    Returns:
        The parsed ``Manifest`` (forward rows before reverse rows for the wide
        paired layout).

    Raises:
        ValueError: If columns or directions are invalid.
        DuplicateSampleError: If a (sample-id, direction) pair repeats.
    """
    path = Path(path)
    fmt = ManifestFormat(output_format) if output_format else sniff_manifest_format(path)
    df = pd.read_csv(path, sep=fmt.separator, dtype=str, keep_default_na=False)
    df.columns = [c.strip() for c in df.columns]

    missing = [c for c in fmt.header if c not in df.columns]
    if missing:
        raise ValueError(f"Manifest {path} missing columns: {', '.join(missing)}")

    if fmt is ManifestFormat.TSV_PAIRED_V2:
        df = df.melt(
            id_vars=[SAMPLE_ID_COLUMN],
            value_vars=[FORWARD_FILEPATH_COLUMN, REVERSE_FILEPATH_COLUMN],
            var_name=DIRECTION_COLUMN,
            value_name=FILEPATH_COLUMN,
        )
        df[DIRECTION_COLUMN] = df[DIRECTION_COLUMN].map(
            {FORWARD_FILEPATH_COLUMN: Direction.FORWARD.value,
             REVERSE_FILEPATH_COLUMN: Direction.REVERSE.value}
        )

    df = df.apply(lambda col: col.str.strip())
    valid = {d.value for d in Direction}
    bad = df.loc[~df[DIRECTION_COLUMN].isin(valid), DIRECTION_COLUMN]
    if not bad.empty:
        raise ValueError(f"Invalid direction(s) in {path}: {', '.join(sorted(set(bad)))}")

    dupes = df[df.duplicated([SAMPLE_ID_COLUMN, DIRECTION_COLUMN], keep=False)]
    if not dupes.empty:
        first = dupes.iloc[0]
        clash = dupes[
            (dupes[SAMPLE_ID_COLUMN] == first[SAMPLE_ID_COLUMN])
            & (dupes[DIRECTION_COLUMN] == first[DIRECTION_COLUMN])
        ]
        raise DuplicateSampleError(
            first[SAMPLE_ID_COLUMN], first[DIRECTION_COLUMN], clash[FILEPATH_COLUMN].tolist()
        )

    records = tuple(
        SampleRecord(
            sample_id=row[SAMPLE_ID_COLUMN],
            file_path=Path(row[FILEPATH_COLUMN]),
            direction=Direction(row[DIRECTION_COLUMN]),
        )
        for row in df.to_dict("records")
    )
    return Manifest(records=records)


def qiime_import_spec(config: ManifestConfig) -> Tuple[str, str]:
    """Return the ``(--type, --input-format)`` pair for ``qiime tools import``.

    Raises:
        ValueError: For paired reads in the long tsv_v2 layout, which QIIME 2
            cannot import.
    """
    paired = config.mode is ReadMode.PAIRED
    semantic_type = (
        "SampleData[PairedEndSequencesWithQuality]" if paired
        else "SampleData[SequencesWithQuality]"
    )
    prefix = "PairedEnd" if paired else "SingleEnd"
    if config.output_format is ManifestFormat.CSV_LEGACY:
        return semantic_type, f"{prefix}FastqManifestPhred33"
    if config.output_format is ManifestFormat.TSV_PAIRED_V2 or not paired:
        return semantic_type, f"{prefix}FastqManifestPhred33V2"
    raise ValueError(
        "Paired reads in tsv_v2 layout cannot be imported; use tsv_paired_v2 or csv_legacy."
    )


# --------------------------------- CLI --------------------------------- #

def setup_logging(*, verbose: bool) -> logging.Logger:
    """Configure console logging for the manifest builder."""
    log = logging.getLogger("make_manifest")
    log.handlers.clear()
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    h = logging.StreamHandler()
    h.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    h.setLevel(logging.DEBUG if verbose else logging.INFO)
    log.addHandler(h)
    return log


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line argument parser for this utility."""
    p = argparse.ArgumentParser(
        description="Create a QIIME 2 FASTQ manifest from a directory of reads.",
        allow_abbrev=False,
    )
    p.add_argument("--reads-dir", required=True, type=Path,
                   help="Directory containing FASTQs (not scanned recursively).")
    p.add_argument("--manifest-out", required=True, type=Path,
                   help="Output path for the manifest (overwritten if present).")
    p.add_argument("--mode", choices=[m.value for m in ReadMode], default=ReadMode.PAIRED.value,
                   help="Read layout (default: paired).")
    p.add_argument("--output-format", choices=[f.value for f in ManifestFormat],
                   default=ManifestFormat.CSV_LEGACY.value,
                   help="Manifest layout (default: csv_legacy).")
    p.add_argument("--delimiter", default="_", type=str,
                   help="Sample-id is the filename text before this (default: _).")
    p.add_argument("--forward-marker", default="_R1", type=str,
                   help="Marker before the extension on forward reads (default: _R1).")
    p.add_argument("--reverse-marker", default="_R2", type=str,
                   help="Marker before the extension on reverse reads (default: _R2).")
    p.add_argument("--extension", action="append", default=None, dest="extensions",
                   help="Accepted read extension; repeat for several (default: .fastq.gz).")
    p.add_argument("--strict-sample-ids", default=False,
                   type=lambda x: str(x).lower() in {"1", "true", "yes"},
                   help="Fail on filenames without the delimiter instead of warning.")
    p.add_argument("--dry-run", default=False,
                   type=lambda x: str(x).lower() in {"1", "true", "yes"},
                   help="Print the manifest to stdout without writing it (default: false).")
    p.add_argument("--verbose", action="store_true", help="Debug logging.")
    return p


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point: parse arguments and build the manifest."""
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)
    try:
        config = ManifestConfig(
            delimiter=args.delimiter,
            mode=ReadMode(args.mode),
            output_format=ManifestFormat(args.output_format),
            forward_marker=args.forward_marker,
            reverse_marker=args.reverse_marker,
            extensions=tuple(args.extensions or (".fastq.gz",)),
            strict_sample_ids=bool(args.strict_sample_ids),
        )
        if args.dry_run:
            manifest = build_manifest(reads_dir=args.reads_dir, config=config)
            print(f"[dry-run] would write manifest: {args.manifest_out}")
            sys.stdout.write(format_manifest(manifest=manifest, output_format=config.output_format))
        else:
            generate_manifest(reads_dir=args.reads_dir, out_path=args.manifest_out, config=config)
    except (ManifestError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
