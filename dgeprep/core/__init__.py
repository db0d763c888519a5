"""
dgeprep core module with the exception hierarchy and shared data types.
"""

from dgeprep.core.exceptions import (
    AmbiguousSampleFileError,
    AnnotationFormatError,
    ConsistencyError,
    DGEPrepCoreError,
    MissingFieldError,
    NoQuantificationFilesFoundError,
    QuantificationFormatError,
    SchemaMismatchError,
    UnmappedTranscriptError,
)

__all__ = [
    "AmbiguousSampleFileError",
    "AnnotationFormatError",
    "ConsistencyError",
    "DGEPrepCoreError",
    "MissingFieldError",
    "NoQuantificationFilesFoundError",
    "QuantificationFormatError",
    "SchemaMismatchError",
    "UnmappedTranscriptError",
]
