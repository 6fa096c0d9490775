#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Find candidate promoter regions for a set of query genes.

Homology hits in 14-column BLAST tabular format are filtered by query coverage,
subject coverage and identity. Surviving subjects are resolved to GFF features
(or to their own alignment coordinates), a strand-aware window is placed next to
each feature, the windows are extracted from the genome, and every extracted
sequence is labelled with the subject and query it came from.
"""

from __future__ import annotations

import argparse
import re
import shlex
import shutil
import subprocess
import sys
from dataclasses import asdict, dataclass
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Callable, NamedTuple

import polars as pl
import pysam
from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass as validated_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Field order of the alignment search output (-outfmt 6 with custom columns)
BLAST_FIELDS: tuple[str, ...] = (
    "qseqid",
    "sseqid",
    "pident",
    "length",
    "mismatch",
    "gapopen",
    "qstart",
    "qend",
    "sstart",
    "send",
    "evalue",
    "bitscore",
    "qlen",
    "slen",
)
BLAST_COLUMNS = len(BLAST_FIELDS)
BLAST_PROGRAMS = ("blastn", "blastp", "blastx", "tblastn", "tblastx")

# Flags the pipeline sets itself; passthrough arguments may not override them
RESERVED_BLAST_FLAGS = frozenset({"-query", "-subject", "-db", "-out", "-outfmt", "-num_threads"})

GFF_COLUMNS = 9
MIN_REGION_SIZE = 10
DEFAULT_WINDOW_SIZE = 2000

BED_SCHEMA: dict[str, type[pl.DataType]] = {
    "seq_id": pl.String,
    "start": pl.Int64,
    "end": pl.Int64,
    "name": pl.String,
    "score": pl.Int64,
    "strand": pl.String,
}

_COMPLEMENT = str.maketrans(
    "ACGTUNRYKMBDHVSWacgtunrykmbdhvsw",
    "TGCAANYRMKVHDBSWtgcaanyrmkvhdbsw",
)
_STRAND_SUFFIX = re.compile(r"\([^()]*\)$")


# ------------------------------- DATA TYPES -------------------------------- #


class MalformedRecordError(ValueError):
    """A single input record could not be parsed; the record is skipped."""


class Strand(str, Enum):
    PLUS = "+"
    MINUS = "-"

    @staticmethod
    def from_coordinates(start: int, end: int) -> Strand:
        """Subject coordinates running backwards mean a minus-strand hit."""
        return Strand.PLUS if start <= end else Strand.MINUS

    @staticmethod
    def from_gff(value: str) -> Strand:
        """Unstranded features ('.' or '?') are placed as if on the plus strand."""
        return Strand.MINUS if value == "-" else Strand.PLUS


class RegionMode(Enum):
    """Which side of a feature the promoter window is placed on."""

    DOWNSTREAM = "downstream"
    UPSTREAM = "upstream"
    BOTH = "both"

    @staticmethod
    def from_cli(value: str) -> RegionMode:
        """Accept the full name or its first letter, case-insensitively."""
        key = value.strip().lower()
        for mode in RegionMode:
            if key in (mode.value, mode.value[0]):
                return mode
        msg = f"Invalid region mode '{value}': expected downstream, upstream or both (d/u/b)"
        raise ValueError(msg)


class RegionRejection(Enum):
    """Expected reasons for not emitting a window. Returned, never raised."""

    SEQUENCE_NOT_FOUND = auto()
    TOO_SHORT = auto()


@validated_dataclass(frozen=True)
class FilterThresholds:
    """Minimum percentages a hit must reach to be selected."""

    min_query_cov: float = Field(default=70.0, ge=0)
    min_subject_cov: float = Field(default=70.0, ge=0)
    min_identity: float = Field(default=30.0, ge=0)


@validated_dataclass(frozen=True)
class RegionSettings:
    """
    How promoter windows are laid out around each feature.

    include_feature_sequence extends the window over the feature body in the
    one-sided modes; it has no effect in BOTH mode, which always spans the
    whole feature.
    """

    mode: RegionMode = RegionMode.DOWNSTREAM
    window_size: int = Field(default=DEFAULT_WINDOW_SIZE, gt=0)
    include_feature_sequence: bool = False


@dataclass(frozen=True)
class AlignmentHit:
    """One line of 14-column tabular alignment search output."""

    query_id: str
    subject_id: str
    identity: float
    length: int
    mismatches: int
    gap_opens: int
    query_start: int
    query_end: int
    subject_start: int
    subject_end: int
    evalue: float
    bit_score: float
    query_length: int
    subject_length: int

    @classmethod
    def from_line(cls, line: str) -> AlignmentHit:
        fields = line.rstrip("\r\n").split("\t")
        if len(fields) != BLAST_COLUMNS:
            msg = f"expected {BLAST_COLUMNS} tab-separated fields, found {len(fields)}"
            raise MalformedRecordError(msg)
        try:
            return cls(
                query_id=fields[0],
                subject_id=fields[1],
                identity=float(fields[2]),
                length=int(fields[3]),
                mismatches=int(fields[4]),
                gap_opens=int(fields[5]),
                query_start=int(fields[6]),
                query_end=int(fields[7]),
                subject_start=int(fields[8]),
                subject_end=int(fields[9]),
                evalue=float(fields[10]),
                bit_score=float(fields[11]),
                query_length=int(fields[12]),
                subject_length=int(fields[13]),
            )
        except ValueError as err:
            msg = f"unparseable numeric field ({err})"
            raise MalformedRecordError(msg) from err

    def coverages(self) -> tuple[float, float]:
        """
        Return (query coverage %, subject coverage %), each rounded to one decimal.

        Raises MalformedRecordError when either sequence length is not positive.
        """
        if self.query_length <= 0 or self.subject_length <= 0:
            msg = (
                f"sequence lengths must be positive "
                f"(qlen={self.query_length}, slen={self.subject_length})"
            )
            raise MalformedRecordError(msg)
        query_cov = round(self.length * 100 / self.query_length, 1)
        subject_cov = round(self.length * 100 / self.subject_length, 1)
        return query_cov, subject_cov


@dataclass(frozen=True)
class SelectedHit:
    """The first hit selected for a subject, with normalized subject coordinates."""

    subject_id: str
    query_id: str
    strand: Strand
    start: int
    end: int

    @classmethod
    def from_hit(cls, hit: AlignmentHit) -> SelectedHit:
        return cls(
            subject_id=hit.subject_id,
            query_id=hit.query_id,
            strand=Strand.from_coordinates(hit.subject_start, hit.subject_end),
            start=min(hit.subject_start, hit.subject_end),
            end=max(hit.subject_start, hit.subject_end),
        )


@dataclass
class FilterStats:
    """Counters for one pass of the hit filter. Means cover every well-formed hit."""

    total: int = 0
    malformed: int = 0
    unique_subjects: int = 0
    failed_query_cov: int = 0
    failed_subject_cov: int = 0
    failed_identity: int = 0
    passed: int = 0
    selected: int = 0
    mean_query_cov: float | None = None
    mean_subject_cov: float | None = None
    mean_identity: float | None = None


class HitSelection(NamedTuple):
    selected: dict[str, SelectedHit]
    stats: FilterStats


@dataclass(frozen=True)
class GenomicFeature:
    """Coordinates a window is placed against, from the GFF or from a hit."""

    feature_id: str
    seq_id: str
    start: int
    end: int
    strand: Strand


class GffRecord(NamedTuple):
    seq_id: str
    feature_type: str
    start: int
    end: int
    strand: str
    attributes: dict[str, str]


class FeatureResolution(NamedTuple):
    features: dict[str, GenomicFeature]
    malformed: int


@dataclass(frozen=True)
class RegionWindow:
    """A clamped interval in BED-style coordinates, tied to the subject it was built for."""

    seq_id: str
    start: int
    end: int
    strand: Strand
    subject_id: str

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def key(self) -> str:
        return f"{self.seq_id}:{self.start}-{self.end}()"


@dataclass
class RunSummary:
    """Everything reported at the end of a run and written to the statistics table."""

    total_hits: int = 0
    malformed_hits: int = 0
    unique_subjects: int = 0
    failed_query_cov: int = 0
    failed_subject_cov: int = 0
    failed_identity: int = 0
    selected_hits: int = 0
    mean_query_cov: float | None = None
    mean_subject_cov: float | None = None
    mean_identity: float | None = None
    malformed_annotations: int = 0
    resolved_features: int = 0
    unresolved_subjects: int = 0
    regions_accepted: int = 0
    regions_too_short: int = 0
    regions_unknown_sequence: int = 0
    sequences_extracted: int = 0
    sequences_decorated: int = 0
    sequences_without_provenance: int = 0
    region_key_collisions: int = 0

    def log(self) -> None:
        logger.success(
            f"Hits: {self.total_hits} (malformed {self.malformed_hits}) | "
            f"unique subjects: {self.unique_subjects} | "
            f"failed qcov/scov/identity: {self.failed_query_cov}/"
            f"{self.failed_subject_cov}/{self.failed_identity} | "
            f"selected: {self.selected_hits}",
        )
        logger.success(
            f"Mean qcov: {_fmt_mean(self.mean_query_cov)} | "
            f"mean scov: {_fmt_mean(self.mean_subject_cov)} | "
            f"mean identity: {_fmt_mean(self.mean_identity)}",
        )
        logger.success(
            f"Features resolved: {self.resolved_features} | unresolved: {self.unresolved_subjects} | "
            f"regions accepted: {self.regions_accepted} | too short: {self.regions_too_short} | "
            f"sequence not in genome: {self.regions_unknown_sequence}",
        )
        logger.success(
            f"Sequences extracted: {self.sequences_extracted} | "
            f"decorated: {self.sequences_decorated} | "
            f"without provenance: {self.sequences_without_provenance} | "
            f"shared region keys: {self.region_key_collisions}",
        )


def _fmt_mean(value: float | None) -> str:
    return "NA" if value is None else f"{value:.1f}"


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive is louder, negative is quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    match verbose - quiet:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case _:
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# -------------------------- ALIGNMENT HIT FILTER --------------------------- #


def parse_alignment_hits(
    lines: Iterable[str],
    source: str = "<hits>",
) -> tuple[list[AlignmentHit], int]:
    """
    Parse tabular alignment lines, skipping blank lines.

    Returns the parsed hits and the number of malformed lines that were skipped.
    """
    hits: list[AlignmentHit] = []
    malformed = 0
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            hits.append(AlignmentHit.from_line(line))
        except MalformedRecordError as err:
            malformed += 1
            logger.warning(f"{source}:{lineno}: skipping malformed alignment record: {err}")
    return hits, malformed


def read_alignment_hits(path: Path) -> tuple[list[AlignmentHit], int]:
    with open(path) as handle:
        hits, malformed = parse_alignment_hits(handle, source=str(path))
    logger.info(f"Read {len(hits)} alignment hits from {path} ({malformed} malformed)")
    return hits, malformed


def filter_hits(hits: Iterable[AlignmentHit], thresholds: FilterThresholds) -> HitSelection:
    """
    Select hits meeting every threshold, keeping the first selected hit per subject.

    Each failed threshold is counted on its own, so one hit can add to several
    failure counters. Hits whose lengths cannot be divided into are counted as
    malformed and take no part in the statistics.
    """
    selected: dict[str, SelectedHit] = {}
    subjects: set[str] = set()
    stats = FilterStats()
    sum_query_cov = 0.0
    sum_subject_cov = 0.0
    sum_identity = 0.0

    for hit in hits:
        try:
            query_cov, subject_cov = hit.coverages()
        except MalformedRecordError as err:
            stats.malformed += 1
            logger.warning(f"Skipping hit {hit.query_id} -> {hit.subject_id}: {err}")
            continue

        stats.total += 1
        subjects.add(hit.subject_id)
        sum_query_cov += query_cov
        sum_subject_cov += subject_cov
        sum_identity += hit.identity

        passed = True
        if query_cov < thresholds.min_query_cov:
            stats.failed_query_cov += 1
            passed = False
        if subject_cov < thresholds.min_subject_cov:
            stats.failed_subject_cov += 1
            passed = False
        if hit.identity < thresholds.min_identity:
            stats.failed_identity += 1
            passed = False

        if not passed:
            logger.debug(
                f"Rejected {hit.query_id} -> {hit.subject_id}: qcov={query_cov}, "
                f"scov={subject_cov}, identity={hit.identity}",
            )
            continue

        stats.passed += 1
        if hit.subject_id in selected:
            logger.debug(f"Subject {hit.subject_id} already selected; keeping the earlier hit")
            continue
        selected[hit.subject_id] = SelectedHit.from_hit(hit)

    stats.unique_subjects = len(subjects)
    stats.selected = len(selected)
    if stats.total:
        stats.mean_query_cov = round(sum_query_cov / stats.total, 1)
        stats.mean_subject_cov = round(sum_subject_cov / stats.total, 1)
        stats.mean_identity = round(sum_identity / stats.total, 1)

    logger.info(
        f"Filter totals: hits={stats.total}, selected={stats.selected}, "
        f"failed_qcov={stats.failed_query_cov}, failed_scov={stats.failed_subject_cov}, "
        f"failed_identity={stats.failed_identity}, malformed={stats.malformed}",
    )
    return HitSelection(selected, stats)


# ---------------------------- ANNOTATION INDEX ----------------------------- #


def parse_gff_attributes(text: str) -> dict[str, str]:
    """Split a `key=value;key=value` column; entries without '=' are ignored."""
    attributes: dict[str, str] = {}
    for entry in text.strip().split(";"):
        key, sep, value = entry.strip().partition("=")
        if sep and key:
            attributes[key] = value
    return attributes


def parse_gff_record(line: str) -> GffRecord:
    fields = line.rstrip("\r\n").split("\t")
    if len(fields) != GFF_COLUMNS:
        msg = f"expected {GFF_COLUMNS} tab-separated fields, found {len(fields)}"
        raise MalformedRecordError(msg)
    try:
        start, end = int(fields[3]), int(fields[4])
    except ValueError as err:
        msg = f"unparseable coordinates ({err})"
        raise MalformedRecordError(msg) from err
    return GffRecord(
        seq_id=fields[0],
        feature_type=fields[2],
        start=start,
        end=end,
        strand=fields[6],
        attributes=parse_gff_attributes(fields[8]),
    )


def resolve_features(
    lines: Iterable[str],
    subject_ids: set[str] | frozenset[str],
    feature_type: str | None = None,
    source: str = "<gff>",
) -> FeatureResolution:
    """
    Map each subject id to the first GFF feature whose ID attribute matches it.

    Any line containing '#' is a comment and is skipped whole. Subjects with no
    matching feature are simply absent from the result.
    """
    features: dict[str, GenomicFeature] = {}
    malformed = 0
    for lineno, line in enumerate(lines, start=1):
        if "#" in line or not line.strip():
            continue
        try:
            record = parse_gff_record(line)
        except MalformedRecordError as err:
            malformed += 1
            logger.warning(f"{source}:{lineno}: skipping malformed annotation record: {err}")
            continue

        if feature_type is not None and record.feature_type != feature_type:
            continue
        feature_id = record.attributes.get("ID")
        if feature_id is None or feature_id not in subject_ids:
            continue
        if feature_id in features:
            logger.debug(f"Feature {feature_id} seen again at {source}:{lineno}; keeping the first")
            continue

        features[feature_id] = GenomicFeature(
            feature_id=feature_id,
            seq_id=record.seq_id,
            start=record.start,
            end=record.end,
            strand=Strand.from_gff(record.strand),
        )
    return FeatureResolution(features, malformed)


def features_from_hits(selected: dict[str, SelectedHit]) -> dict[str, GenomicFeature]:
    """Use the selected hits' own subject coordinates instead of the annotation."""
    return {
        subject_id: GenomicFeature(
            feature_id=subject_id,
            seq_id=subject_id,
            start=hit.start,
            end=hit.end,
            strand=hit.strand,
        )
        for subject_id, hit in selected.items()
    }


def load_sequence_lengths(genome: Path) -> dict[str, int]:
    """Sequence id -> length, via the FASTA index (built next to the genome if absent)."""
    with pysam.FastaFile(str(genome)) as fasta:
        lengths = dict(zip(fasta.references, fasta.lengths))
    logger.info(f"Indexed {len(lengths)} sequences from {genome}")
    return lengths


# ---------------------------- REGION CALCULATOR ---------------------------- #

WindowRule = Callable[[int, int, int, bool], tuple[int, int]]


def _before_feature(start: int, end: int, window: int, include: bool) -> tuple[int, int]:  # noqa: FBT001
    return start - window - 1, (end if include else start - 1)


def _after_feature(start: int, end: int, window: int, include: bool) -> tuple[int, int]:  # noqa: FBT001
    return (start if include else end + 1), end + 1 + window


def _around_feature(start: int, end: int, window: int, include: bool) -> tuple[int, int]:  # noqa: ARG001, FBT001
    return start - window - 1, end + 1 + window


# Downstream and upstream swap sides between strands; BOTH does not depend on strand.
WINDOW_RULES: dict[tuple[Strand, RegionMode], WindowRule] = {
    (Strand.PLUS, RegionMode.DOWNSTREAM): _before_feature,
    (Strand.PLUS, RegionMode.UPSTREAM): _after_feature,
    (Strand.PLUS, RegionMode.BOTH): _around_feature,
    (Strand.MINUS, RegionMode.DOWNSTREAM): _after_feature,
    (Strand.MINUS, RegionMode.UPSTREAM): _before_feature,
    (Strand.MINUS, RegionMode.BOTH): _around_feature,
}


def raw_window(feature: GenomicFeature, settings: RegionSettings) -> tuple[int, int]:
    """Unclamped (start, end) for a feature under the given settings."""
    rule = WINDOW_RULES[(feature.strand, settings.mode)]
    return rule(
        feature.start,
        feature.end,
        settings.window_size,
        settings.include_feature_sequence,
    )


def compute_region_window(
    feature: GenomicFeature,
    settings: RegionSettings,
    sequence_length: int | None,
) -> RegionWindow | RegionRejection:
    """
    Place, clamp and validate the window for one feature.

    A start at or below zero becomes 1 and an end at or past the sequence
    length becomes the length. Windows spanning fewer than MIN_REGION_SIZE
    bases are rejected, as are features on sequences missing from the genome.
    """
    if sequence_length is None:
        return RegionRejection.SEQUENCE_NOT_FOUND

    start, end = raw_window(feature, settings)
    if start <= 0:
        start = 1
    if end >= sequence_length:
        end = sequence_length
    if end - start < MIN_REGION_SIZE:
        return RegionRejection.TOO_SHORT

    return RegionWindow(
        seq_id=feature.seq_id,
        start=start,
        end=end,
        strand=feature.strand,
        subject_id=feature.feature_id,
    )


# ---------------------------- PROVENANCE LEDGER ---------------------------- #


def region_key_base(name: str) -> str:
    """
    Reduce a region key or extracted record name to `seqid:start-end`.

    Drops a `name::` prefix and any trailing parenthesised strand marker, so
    `Chr1:799-999()`, `Chr1:799-999(+)` and `S1::Chr1:799-999(+)` all match.
    """
    return _STRAND_SUFFIX.sub("", name.strip().split("::")[-1])


class ProvenanceLedger:
    """Traces an extracted region back to its subject and originating query."""

    def __init__(self, subject_queries: dict[str, str]) -> None:
        self._subject_queries = dict(subject_queries)
        self._region_subjects: dict[str, str] = {}
        self.collisions = 0

    def __len__(self) -> int:
        return len(self._region_subjects)

    def record(self, region_key: str, subject_id: str) -> None:
        """Register a region; the first subject recorded for a region is kept."""
        base = region_key_base(region_key)
        known = self._region_subjects.get(base)
        if known is not None:
            if known != subject_id:
                self.collisions += 1
                logger.warning(
                    f"Region {base} was already recorded for {known}; "
                    f"{subject_id} shares the same coordinates",
                )
            return
        self._region_subjects[base] = subject_id

    def lookup(self, sequence_name: str) -> tuple[str, str]:
        """Return (subject id, query id), or empty strings when the region is unknown."""
        subject_id = self._region_subjects.get(region_key_base(sequence_name))
        if subject_id is None:
            return "", ""
        return subject_id, self._subject_queries.get(subject_id, "")


# ----------------------------- EXTERNAL TOOLS ------------------------------ #


def require_executable(name: str) -> str:
    """Resolve an executable on PATH or raise FileNotFoundError."""
    path = shutil.which(name)
    if not path:
        msg = f"{name} not found in PATH"
        raise FileNotFoundError(msg)
    return path


def check_passthrough_args(extra_args: Sequence[str]) -> None:
    collisions = sorted({arg for arg in extra_args if arg in RESERVED_BLAST_FLAGS})
    if collisions:
        msg = f"Search arguments may not set reserved flags: {', '.join(collisions)}"
        raise ValueError(msg)


def _staging_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.partial")


def run_alignment_search(  # noqa: PLR0913
    program: str,
    query: Path,
    subject: Path,
    out_path: Path,
    evalue: float | None = None,
    threads: int | None = None,
    extra_args: Sequence[str] = (),
) -> None:
    """
    Run a BLAST+ search of `query` against `subject` and write 14-column tabular hits.

    `program` is the resolved executable path. The output file only appears once
    the search has exited successfully.
    """
    check_passthrough_args(extra_args)
    staging = _staging_path(out_path)
    cmd = [
        program,
        "-query",
        str(query),
        "-subject",
        str(subject),
        "-outfmt",
        "6 " + " ".join(BLAST_FIELDS),
        "-out",
        str(staging),
    ]
    if evalue is not None:
        cmd.extend(["-evalue", str(evalue)])
    if threads is not None:
        cmd.extend(["-num_threads", str(threads)])
    cmd.extend(extra_args)

    logger.info(f"Running alignment search: {shlex.join(cmd)}")
    subprocess.run(cmd, check=True, capture_output=True, text=True)  # noqa: S603
    staging.replace(out_path)
    logger.info(f"Alignment search finished: {out_path}")


def extract_with_bedtools(bedtools: str, genome: Path, bed: Path, out_fasta: Path) -> None:
    """Strand-aware extraction with `bedtools getfasta -s`."""
    staging = _staging_path(out_fasta)
    cmd = [
        bedtools,
        "getfasta",
        "-fi",
        str(genome),
        "-bed",
        str(bed),
        "-s",
        "-fo",
        str(staging),
    ]
    logger.info(f"Extracting regions: {shlex.join(cmd)}")
    subprocess.run(cmd, check=True, capture_output=True, text=True)  # noqa: S603
    staging.replace(out_fasta)


def reverse_complement(seq: str) -> str:
    return seq.translate(_COMPLEMENT)[::-1]


def extract_with_pysam(genome: Path, bed: Path, out_fasta: Path) -> None:
    """
    In-process equivalent of `bedtools getfasta -s`.

    Records are named `seqid:start-end(strand)` and minus-strand intervals are
    reverse complemented.
    """
    intervals = pl.read_csv(bed, separator="\t", has_header=False, schema=BED_SCHEMA)
    staging = _staging_path(out_fasta)
    with pysam.FastaFile(str(genome)) as fasta, open(staging, "w") as out:
        for row in intervals.iter_rows(named=True):
            seq = fasta.fetch(row["seq_id"], row["start"], row["end"])
            if row["strand"] == Strand.MINUS.value:
                seq = reverse_complement(seq)
            out.write(f">{row['seq_id']}:{row['start']}-{row['end']}({row['strand']})\n{seq}\n")
    staging.replace(out_fasta)
    logger.info(f"Extracted {intervals.height} regions to {out_fasta}")


Extractor = Callable[[Path, Path, Path], None]


def make_extractor(name: str) -> Extractor:
    """Build the extraction callable, resolving external tools up front."""
    match name:
        case "bedtools":
            bedtools = require_executable("bedtools")
            return lambda genome, bed, out_fasta: extract_with_bedtools(
                bedtools, genome, bed, out_fasta
            )
        case "pysam":
            return extract_with_pysam
        case _:
            msg = f"Unknown extractor: {name}"
            raise ValueError(msg)


# ------------------------------- OUTPUT I/O -------------------------------- #


@dataclass(frozen=True)
class OutputPaths:
    hits: Path
    bed: Path
    raw_fasta: Path
    fasta: Path
    stats: Path

    @classmethod
    def from_prefix(cls, prefix: str | Path) -> OutputPaths:
        base = str(prefix)
        return cls(
            hits=Path(f"{base}.hits.tsv"),
            bed=Path(f"{base}.bed"),
            raw_fasta=Path(f"{base}.raw.fa"),
            fasta=Path(f"{base}.fa"),
            stats=Path(f"{base}.stats.tsv"),
        )


def write_bed(windows: Sequence[RegionWindow], path: Path) -> None:
    """Write windows as headerless BED6: seqid, start, end, subject, 0, strand."""
    frame = pl.DataFrame(
        {
            "seq_id": [w.seq_id for w in windows],
            "start": [w.start for w in windows],
            "end": [w.end for w in windows],
            "name": [w.subject_id for w in windows],
            "score": [0] * len(windows),
            "strand": [w.strand.value for w in windows],
        },
        schema=BED_SCHEMA,
    )
    staging = _staging_path(path)
    frame.write_csv(staging, separator="\t", include_header=False)
    staging.replace(path)
    logger.info(f"Wrote {frame.height} coordinate intervals to {path}")


def decorate_sequences(
    raw_fasta: Path,
    ledger: ProvenanceLedger,
    out_fasta: Path,
) -> tuple[int, int]:
    """
    Copy extracted records, setting each description to `SubjID=<s> QueryID=<q>`.

    Returns (records written, records with no provenance).
    """
    written = 0
    unmatched = 0
    staging = _staging_path(out_fasta)
    with open(staging, "w") as out:
        if raw_fasta.stat().st_size > 0:
            with pysam.FastxFile(str(raw_fasta)) as records:
                for record in records:
                    subject_id, query_id = ledger.lookup(record.name)
                    if not subject_id:
                        unmatched += 1
                        logger.warning(f"No provenance for extracted sequence {record.name}")
                    out.write(
                        f">{record.name} SubjID={subject_id} QueryID={query_id}\n"
                        f"{record.sequence}\n",
                    )
                    written += 1
    staging.replace(out_fasta)
    logger.info(f"Wrote {written} decorated sequences to {out_fasta}")
    return written, unmatched


def write_run_statistics(summary: RunSummary, path: Path) -> None:
    """One-row, tab-separated table with a column per metric."""
    staging = _staging_path(path)
    pl.DataFrame([asdict(summary)]).write_csv(staging, separator="\t")
    staging.replace(path)
    logger.info(f"Wrote run statistics to {path}")


# ------------------------------- PIPELINE ---------------------------------- #


def find_promoter_regions(  # noqa: PLR0913
    hits_path: Path,
    genome: Path,
    gff: Path | None,
    thresholds: FilterThresholds,
    settings: RegionSettings,
    outputs: OutputPaths,
    extractor: Extractor,
    use_hit_coordinates: bool = False,  # noqa: FBT001, FBT002
    feature_type: str | None = None,
) -> RunSummary:
    """
    Run hits -> features -> windows -> extraction -> labelled sequences.

    Per-record problems are logged, counted and dropped. Anything raised from
    here (I/O errors, a failing external tool) ends the run.
    """
    summary = RunSummary()

    hits, malformed_lines = read_alignment_hits(hits_path)
    selection = filter_hits(hits, thresholds)
    stats = selection.stats
    summary.total_hits = stats.total
    summary.malformed_hits = malformed_lines + stats.malformed
    summary.unique_subjects = stats.unique_subjects
    summary.failed_query_cov = stats.failed_query_cov
    summary.failed_subject_cov = stats.failed_subject_cov
    summary.failed_identity = stats.failed_identity
    summary.selected_hits = stats.selected
    summary.mean_query_cov = stats.mean_query_cov
    summary.mean_subject_cov = stats.mean_subject_cov
    summary.mean_identity = stats.mean_identity

    ledger = ProvenanceLedger(
        {subject_id: hit.query_id for subject_id, hit in selection.selected.items()},
    )

    if use_hit_coordinates:
        logger.info("Using alignment coordinates of the selected hits as features")
        features = features_from_hits(selection.selected)
    else:
        if gff is None:
            msg = "An annotation file is required unless hit coordinates are used"
            raise ValueError(msg)
        with open(gff) as handle:
            resolution = resolve_features(
                handle,
                frozenset(selection.selected),
                feature_type=feature_type,
                source=str(gff),
            )
        features = resolution.features
        summary.malformed_annotations = resolution.malformed
        unresolved = sorted(set(selection.selected) - set(features))
        summary.unresolved_subjects = len(unresolved)
        if unresolved:
            logger.warning(f"{len(unresolved)} selected subjects have no annotation feature")
            logger.debug(f"Unresolved subjects: {', '.join(unresolved)}")
    summary.resolved_features = len(features)

    lengths = load_sequence_lengths(genome)
    windows: list[RegionWindow] = []
    for subject_id in sorted(features):
        feature = features[subject_id]
        outcome = compute_region_window(feature, settings, lengths.get(feature.seq_id))
        match outcome:
            case RegionRejection.SEQUENCE_NOT_FOUND:
                summary.regions_unknown_sequence += 1
                logger.warning(f"{subject_id}: sequence {feature.seq_id} not found in genome")
            case RegionRejection.TOO_SHORT:
                summary.regions_too_short += 1
                logger.warning(
                    f"{subject_id}: region on {feature.seq_id} is shorter than "
                    f"{MIN_REGION_SIZE} bp after clamping; skipped",
                )
            case RegionWindow():
                windows.append(outcome)
                ledger.record(outcome.key, subject_id)
    summary.regions_accepted = len(windows)
    summary.region_key_collisions = ledger.collisions

    write_bed(windows, outputs.bed)
    if windows:
        extractor(genome, outputs.bed, outputs.raw_fasta)
    else:
        logger.warning("No regions passed; skipping extraction")
        outputs.raw_fasta.write_text("")

    written, unmatched = decorate_sequences(outputs.raw_fasta, ledger, outputs.fasta)
    summary.sequences_extracted = written
    summary.sequences_decorated = written - unmatched
    summary.sequences_without_provenance = unmatched

    write_run_statistics(summary, outputs.stats)
    return summary


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Find candidate promoter regions for query genes.\n"
            "Filters homology hits by coverage and identity, resolves subjects to\n"
            "GFF features, places strand-aware windows next to them, extracts the\n"
            "windows from the genome and labels each sequence with SubjID/QueryID."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Inputs
    inputs = p.add_argument_group("Inputs")
    inputs.add_argument("-g", "--genome", required=True, help="Genome FASTA")
    inputs.add_argument(
        "-a",
        "--gff",
        default=None,
        help="Annotation GFF3 (required unless --use-hit-coordinates)",
    )
    inputs.add_argument(
        "--hits",
        default=None,
        help="Precomputed 14-column tabular hits (skips the search)",
    )
    inputs.add_argument("--query", default=None, help="Query sequences for the search")
    inputs.add_argument("--subject", default=None, help="Subject sequences for the search")

    # Search
    search = p.add_argument_group("Alignment Search")
    search.add_argument(
        "--blast-program",
        choices=BLAST_PROGRAMS,
        default="blastn",
        help="BLAST+ program to run (default: blastn)",
    )
    search.add_argument("--evalue", type=float, default=None, help="E-value cutoff for the search")
    search.add_argument(
        "--threads",
        type=int,
        default=None,
        help="Number of search threads (passed as -num_threads)",
    )
    search.add_argument(
        "--blast-args",
        default="",
        help=(
            "Extra arguments passed to the search program. Give the value with \"=\" "
            "so it is not read as an option, e.g. --blast-args=\"-word_size 11\""
        ),
    )

    # Filtering
    filtering = p.add_argument_group("Hit Filtering")
    filtering.add_argument(
        "--min-query-cov",
        type=float,
        default=70.0,
        help="Minimum query coverage %% (default: 70)",
    )
    filtering.add_argument(
        "--min-subject-cov",
        type=float,
        default=70.0,
        help="Minimum subject coverage %% (default: 70)",
    )
    filtering.add_argument(
        "--min-identity",
        type=float,
        default=30.0,
        help="Minimum percent identity (default: 30)",
    )

    # Regions
    regions = p.add_argument_group("Region Configuration")
    regions.add_argument(
        "-m",
        "--mode",
        default="downstream",
        help="Window placement: downstream, upstream or both (d/u/b)",
    )
    regions.add_argument(
        "-w",
        "--window-size",
        type=int,
        default=DEFAULT_WINDOW_SIZE,
        help=f"Window length in bases (default: {DEFAULT_WINDOW_SIZE})",
    )
    regions.add_argument(
        "--include-feature-sequence",
        action="store_true",
        help="Extend one-sided windows over the feature itself",
    )
    regions.add_argument(
        "--use-hit-coordinates",
        action="store_true",
        help="Place windows against the hits' subject coordinates instead of the GFF",
    )
    regions.add_argument(
        "--feature-type",
        default=None,
        help="Only match GFF features of this type (e.g. gene, mRNA)",
    )

    # Output
    p.add_argument(
        "--extractor",
        choices=["bedtools", "pysam"],
        default="bedtools",
        help="Sequence extraction backend (default: bedtools)",
    )
    p.add_argument(
        "-o",
        "--out-prefix",
        default="promoters",
        help="Prefix for output files (default: promoters)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def _require_input(path: str | None, what: str) -> Path:
    """A mandatory input must exist and be non-empty."""
    if not path:
        msg = f"Missing required input: {what}"
        raise FileNotFoundError(msg)
    resolved = Path(path)
    if not resolved.is_file():
        msg = f"{what} not found: {resolved}"
        raise FileNotFoundError(msg)
    if resolved.stat().st_size == 0:
        msg = f"{what} is empty: {resolved}"
        raise ValueError(msg)
    return resolved


def main(argv: Sequence[str] | None = None) -> None:  # noqa: C901, PLR0915
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting promoter region run.")

    # Configuration and environment are settled before any processing starts
    try:
        thresholds = FilterThresholds(
            min_query_cov=args.min_query_cov,
            min_subject_cov=args.min_subject_cov,
            min_identity=args.min_identity,
        )
        settings = RegionSettings(
            mode=RegionMode.from_cli(args.mode),
            window_size=args.window_size,
            include_feature_sequence=bool(args.include_feature_sequence),
        )
        extra_args = shlex.split(args.blast_args)
        check_passthrough_args(extra_args)
        if args.threads is not None and args.threads < 1:
            msg = f"--threads must be a positive integer, got {args.threads}"
            raise ValueError(msg)

        genome = _require_input(args.genome, "genome FASTA")
        gff = None if args.use_hit_coordinates else _require_input(args.gff, "annotation GFF")

        searching = args.hits is None
        if searching:
            if not (args.query and args.subject):
                msg = "Provide --hits, or both --query and --subject to run the search"
                raise ValueError(msg)
            query = _require_input(args.query, "query sequences")
            subject = _require_input(args.subject, "subject sequences")
            blast = require_executable(args.blast_program)
        else:
            if args.query or args.subject:
                msg = "--hits cannot be combined with --query/--subject"
                raise ValueError(msg)
            hits_path = _require_input(args.hits, "alignment hits")

        extractor = make_extractor(args.extractor)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.debug(f"FilterThresholds: {thresholds}")
    logger.debug(f"RegionSettings: {settings}")

    outputs = OutputPaths.from_prefix(args.out_prefix)
    outputs.fasta.parent.mkdir(parents=True, exist_ok=True)

    try:
        if searching:
            run_alignment_search(
                blast,
                query,
                subject,
                outputs.hits,
                evalue=args.evalue,
                threads=args.threads,
                extra_args=extra_args,
            )
            hits_path = outputs.hits

        summary = find_promoter_regions(
            hits_path=hits_path,
            genome=genome,
            gff=gff,
            thresholds=thresholds,
            settings=settings,
            outputs=outputs,
            extractor=extractor,
            use_hit_coordinates=bool(args.use_hit_coordinates),
            feature_type=args.feature_type,
        )
    except subprocess.CalledProcessError as e:
        tail = (e.stderr or "").strip().splitlines()[-5:]
        logger.error(f"External tool failed with exit status {e.returncode}: {shlex.join(e.cmd)}")
        for line in tail:
            logger.error(line)
        sys.exit(1)
    except (OSError, ValueError, pl.exceptions.PolarsError) as e:
        logger.error(f"Promoter region run failed: {e}")
        sys.exit(1)

    summary.log()
    logger.info("Promoter region run complete.")


if __name__ == "__main__":
    main()
