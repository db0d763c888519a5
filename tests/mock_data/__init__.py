"""
Mock data generation utilities for the dgeprep test suite.

This module provides reproducible synthetic GTF annotations, per-sample
quantification trees, sample metadata and NCBI E-utilities responses.
"""

from .base import MEDIUM_DATASET_CONFIG, SMALL_DATASET_CONFIG, MockDataConfig
from .generators import (
    generate_docsum,
    generate_esearch_response,
    generate_esummary_xml,
    generate_exp_xml,
    generate_gene_models,
    generate_gtf_text,
    generate_quant_tree,
    generate_runs_xml,
    generate_sample_metadata,
    tx2gene_from_models,
    write_quant_file,
)

__all__ = [
    "MockDataConfig",
    "SMALL_DATASET_CONFIG",
    "MEDIUM_DATASET_CONFIG",
    "generate_docsum",
    "generate_esearch_response",
    "generate_esummary_xml",
    "generate_exp_xml",
    "generate_gene_models",
    "generate_gtf_text",
    "generate_quant_tree",
    "generate_runs_xml",
    "generate_sample_metadata",
    "tx2gene_from_models",
    "write_quant_file",
]
