"""
Core exceptions for dgeprep.

This module provides the exception hierarchy used by every stage of the
input-assembly workflow. Each error carries a human-readable message plus a
``details`` dict with structured context (offending columns, sample ids,
counts) and, where useful, a list of ``suggestions``.
"""

from typing import Any, Dict, Optional


class DGEPrepCoreError(Exception):
    """Base exception for all dgeprep errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class MissingFieldError(DGEPrepCoreError):
    """
    Raised when an expected field is absent from a metadata source.

    For remote SRA summaries this means the sample identifier cannot be
    resolved from metadata even though the run has sequencing data. The
    loader aborts instead of returning a partial table.

    Attributes:
        details: Contains:
            - missing_fields: List of absent field names
            - record: Identifier of the offending record (UID or file path)
            - available_fields: Fields that were present
    """

    pass


class SchemaMismatchError(DGEPrepCoreError):
    """
    Raised when the curation configuration references a column that the
    input table does not have.

    Attributes:
        details: Contains:
            - missing_columns: Columns requested but absent
            - available_columns: Columns present in the input
            - step: Curation step that failed (project, filter, label)
    """

    pass


class AnnotationFormatError(DGEPrepCoreError):
    """Raised when a GTF file or the features derived from it are malformed."""

    pass


class QuantificationFormatError(DGEPrepCoreError):
    """Raised when a quantification file lacks the expected columns."""

    pass


class NoQuantificationFilesFoundError(DGEPrepCoreError):
    """
    Raised when discovery finds no quantification files, or when none of
    the discovered files belongs to a retained sample.

    Attributes:
        details: Contains:
            - root: Directory that was searched
            - file_name: File name pattern searched for
            - n_discovered: Number of files found before restriction
    """

    pass


class AmbiguousSampleFileError(DGEPrepCoreError):
    """Raised when two quantification files resolve to the same sample id."""

    pass


class UnmappedTranscriptError(DGEPrepCoreError):
    """
    Raised when a quantification file contains transcripts that are absent
    from the transcript-to-gene map and the aggregation policy is strict.

    Attributes:
        details: Contains:
            - sample_id: Sample whose file contains unmapped transcripts
            - n_unmapped: Number of unmapped transcripts
            - examples: Up to five unmapped transcript ids
            - suggestions: How to resolve (matching annotation release,
              ignore_tx_version, unmapped_policy="drop")
    """

    pass


class ConsistencyError(DGEPrepCoreError):
    """
    Raised by the exporter when sample metadata and the quantification
    bundle disagree. The checker itself only reports.
    """

    pass
