"""
dgeprep - input assembly for bulk RNA-seq differential expression studies.

Each stage (metadata retrieval, curation, annotation lookups, gene-level
aggregation, consistency checking, export) is a separate service that the
user runs explicitly, either from Python or through the ``dgeprep`` CLI.
"""

from dgeprep.version import __version__

__all__ = ["__version__"]
