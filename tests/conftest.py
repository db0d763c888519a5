"""
Pytest configuration and shared fixtures for the dgeprep test suite.

This module provides markers, isolated workspaces and the small synthetic
inputs (GTF, quantification tree, metadata, curation config) used across
unit and integration tests.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator

import pandas as pd
import pytest

from dgeprep.config.curation_config import CurationConfig
from tests.mock_data import (
    SMALL_DATASET_CONFIG,
    generate_gtf_text,
    generate_sample_metadata,
    write_quant_file,
)

# Suppress warnings during testing
logging.getLogger("anndata").setLevel(logging.ERROR)
logging.getLogger("h5py").setLevel(logging.ERROR)

# Test constants
TEST_WORKSPACE_PREFIX = "dgeprep_test_"


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Core Infrastructure Fixtures
# ==============================================================================


@pytest.fixture(scope="session")
def test_config() -> Dict[str, Any]:
    """Global test configuration."""
    return {
        "workspace_prefix": TEST_WORKSPACE_PREFIX,
        "cleanup_workspaces": True,
        "synthetic_data_seed": 42,
    }


@pytest.fixture(scope="function")
def temp_workspace(test_config: Dict[str, Any]) -> Generator[Path, None, None]:
    """Create isolated temporary workspace for each test."""
    workspace_path = Path(tempfile.mkdtemp(prefix=test_config["workspace_prefix"]))

    (workspace_path / "data").mkdir(exist_ok=True)
    (workspace_path / "exports").mkdir(exist_ok=True)

    try:
        yield workspace_path
    finally:
        if test_config["cleanup_workspaces"] and workspace_path.exists():
            shutil.rmtree(workspace_path, ignore_errors=True)


@pytest.fixture(scope="function")
def isolated_environment(temp_workspace: Path, monkeypatch):
    """Create completely isolated environment for testing."""
    monkeypatch.chdir(temp_workspace)

    test_env = {
        "DGEPREP_WORKSPACE": str(temp_workspace),
        "NCBI_API_KEY": "test-ncbi-key",
        "NCBI_EMAIL": "test@example.org",
        "DGEPREP_BACKOFF_SECONDS": "0",
    }
    for key, value in test_env.items():
        monkeypatch.setenv(key, value)

    yield temp_workspace


# ==============================================================================
# Annotation Fixtures
# ==============================================================================

GENE_MODELS = [
    {
        "gene_id": "G1",
        "gene_name": "GENE1",
        "gene_biotype": "protein_coding",
        "transcripts": ["T1", "T2"],
    },
    {
        "gene_id": "G2",
        "gene_name": "GENE2",
        "gene_biotype": "lncRNA",
        "transcripts": ["T3"],
        "strand": "-",
    },
    {
        # No gene_name attribute
        "gene_id": "G3",
        "gene_biotype": "protein_coding",
        "transcripts": ["T4"],
        "seqname": "X",
    },
]


@pytest.fixture
def gene_models():
    return [dict(g) for g in GENE_MODELS]


@pytest.fixture
def gtf_file(temp_workspace: Path, gene_models) -> Path:
    """Small GTF: G1 (T1, T2), G2 (T3), G3 (T4, no gene_name)."""
    path = temp_workspace / "data" / "genes.gtf"
    path.write_text(generate_gtf_text(gene_models))
    return path


@pytest.fixture
def tx2gene() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "transcript_id": ["T1", "T2", "T3", "T4"],
            "gene_id": ["G1", "G1", "G2", "G3"],
        }
    )


@pytest.fixture
def transcript_metadata() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "transcript_id": ["T1", "T2", "T3", "T4"],
            "gene_id": ["G1", "G1", "G2", "G3"],
            "gene_name": ["GENE1", "GENE1", "GENE2", None],
            "gene_biotype": ["protein_coding", "protein_coding", "lncRNA", "protein_coding"],
        }
    )


# ==============================================================================
# Quantification Fixtures
# ==============================================================================

# (transcript_id, length, effective_length, tpm, counts) per sample
QUANT_RECORDS = {
    "S1": [
        ("T1", 1000, 800.0, 100.0, 80.0),
        ("T2", 1500, 1300.0, 50.0, 65.0),
        ("T3", 2000, 1800.0, 0.0, 0.0),
        ("T4", 500, 300.0, 10.0, 3.0),
    ],
    "S2": [
        ("T1", 1000, 820.0, 0.0, 0.0),
        ("T2", 1500, 1280.0, 0.0, 0.0),
        ("T3", 2000, 1790.0, 40.0, 72.0),
        ("T4", 500, 310.0, 20.0, 6.2),
    ],
    "S3": [
        ("T1", 1000, 810.0, 30.0, 24.3),
        ("T2", 1500, 1310.0, 30.0, 39.3),
        ("T3", 2000, 1810.0, 10.0, 18.1),
        ("T4", 500, 290.0, 0.0, 0.0),
    ],
}


@pytest.fixture
def quant_records() -> Dict[str, list]:
    return {k: list(v) for k, v in QUANT_RECORDS.items()}


@pytest.fixture
def salmon_root(temp_workspace: Path, quant_records) -> Path:
    """Salmon tree ``quant/<sample>/quant.sf`` for S1, S2, S3."""
    root = temp_workspace / "quant"
    for sample_id, records in quant_records.items():
        write_quant_file(root / sample_id, records, tool="salmon")
    return root


@pytest.fixture
def kallisto_root(temp_workspace: Path, quant_records) -> Path:
    """Kallisto tree ``kallisto/<sample>/abundance.tsv`` for S1, S2, S3."""
    root = temp_workspace / "kallisto"
    for sample_id, records in quant_records.items():
        write_quant_file(root / sample_id, records, tool="kallisto")
    return root


# ==============================================================================
# Metadata Fixtures
# ==============================================================================


@pytest.fixture
def raw_metadata() -> pd.DataFrame:
    """Raw metadata for S1..S4 with realistic covariates."""
    return generate_sample_metadata(SMALL_DATASET_CONFIG)


@pytest.fixture
def curation_config() -> CurationConfig:
    return CurationConfig(
        id_column="sample_id",
        retain_columns=["sample_id", "disease_status", "age", "tumor_type"],
        annotation_column="tumor_type",
        label_rules=[
            {"pattern": "Astro", "label": "AST"},
            {"pattern": "Glioma", "label": "GLI"},
        ],
    )


@pytest.fixture
def metadata_tsv(temp_workspace: Path) -> Path:
    """Local metadata TSV with empty and NA cells."""
    path = temp_workspace / "data" / "samples.tsv"
    path.write_text(
        "sample_id\tdisease_status\tage\ttumor_type\tconsent_withdrawn\tfile_path\n"
        "S1\ttumor\t34\tAstrocytoma\t\t/data/S1_a.fastq.gz\n"
        "S1\ttumor\t34\tAstrocytoma\t\t/data/S1_b.fastq.gz\n"
        "S2\tnormal\tNA\tGlioma\t\t/data/S2.fastq.gz\n"
        "S3\ttumor\t61\tOligodendroglioma\tyes\t/data/S3.fastq.gz\n"
        "S4\ttumor\t12\tAstrocytoma\t\t/data/S4.fastq.gz\n"
    )
    return path
