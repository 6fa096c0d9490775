# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the promoter region finder.

Provides a small genome FASTA, a matching GFF3 annotation, tabular hit files and
a factory for AlignmentHit values so the filter can be tested without files.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from find_promoter_regions import AlignmentHit  # noqa: E402

CHR1_LENGTH = 5000
CHR2_LENGTH = 300


def _sequence(length: int, unit: str) -> str:
    return (unit * (length // len(unit) + 1))[:length]


def write_fasta(path: Path, records: dict[str, str], width: int = 60) -> Path:
    """Write FASTA with fixed-width lines so it can be faidx-indexed."""
    with open(path, "w") as f:
        for name, seq in records.items():
            f.write(f">{name}\n")
            for i in range(0, len(seq), width):
                f.write(f"{seq[i : i + width]}\n")
    return path


def hit_line(  # noqa: PLR0913
    query: str = "Q1",
    subject: str = "S1",
    identity: float = 95.0,
    length: int = 300,
    sstart: int = 1000,
    send: int = 1300,
    qlen: int = 300,
    slen: int = 300,
) -> str:
    """One 14-column tabular hit line."""
    fields = [
        query,
        subject,
        f"{identity:.3f}",
        str(length),
        "0",
        "0",
        "1",
        str(length),
        str(sstart),
        str(send),
        "1e-100",
        "500",
        str(qlen),
        str(slen),
    ]
    return "\t".join(fields) + "\n"


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def genome_sequences() -> dict[str, str]:
    return {
        "Chr1": _sequence(CHR1_LENGTH, "ACGTTGCAAGGCTTAC"),
        "Chr2": _sequence(CHR2_LENGTH, "GGATCCA"),
    }


@pytest.fixture
def genome_fasta(temp_dir: Path, genome_sequences: dict[str, str]) -> Path:
    return write_fasta(temp_dir / "genome.fa", genome_sequences)


@pytest.fixture
def gff_file(temp_dir: Path) -> Path:
    """Annotation with one feature per strand, a comment and an unrelated gene."""
    path = temp_dir / "annotation.gff3"
    path.write_text(
        "##gff-version 3\n"
        "Chr1\ttest\tgene\t1000\t1300\t.\t+\t.\tID=S1;Name=geneA\n"
        "Chr1\ttest\tgene\t3000\t3400\t.\t-\t.\tID=S2;Name=geneB\n"
        "Chr2\ttest\tgene\t10\t200\t.\t+\t.\tID=S9;Name=unrelated\n",
    )
    return path


@pytest.fixture
def hits_file(temp_dir: Path) -> Path:
    """The single-hit scenario: Q1 hits S1 end to end."""
    path = temp_dir / "hits.tsv"
    path.write_text(hit_line())
    return path


@pytest.fixture
def make_hit() -> Callable[..., AlignmentHit]:
    """Factory for AlignmentHit values built from hit_line keyword arguments."""

    def _make(**kwargs: object) -> AlignmentHit:
        return AlignmentHit.from_line(hit_line(**kwargs))

    return _make


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
