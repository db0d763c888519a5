"""
Annotation service for GTF parsing and transcript lookup tables.

The GTF is read into a feature table (one row per gene, transcript, exon,
...) from which two lookups are derived:

- tx2gene: transcript_id -> gene_id, used for gene-level aggregation
- transcript metadata: transcript_id -> (gene_id, gene_name, gene_biotype)

Both derivations are pure filter/select/distinct operations on the
feature table.
"""

import csv
from pathlib import Path
from typing import List, Union

import pandas as pd

from dgeprep.core.exceptions import AnnotationFormatError
from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)

GTF_COLUMNS: List[str] = [
    "seqname",
    "source",
    "type",
    "start",
    "end",
    "score",
    "strand",
    "frame",
    "attribute",
]

# Attribute keys extracted into columns
GTF_ATTRIBUTES: List[str] = [
    "gene_id",
    "transcript_id",
    "gene_name",
    "gene_biotype",
    "transcript_name",
    "transcript_biotype",
]

TRANSCRIPT_METADATA_COLUMNS: List[str] = [
    "transcript_id",
    "gene_id",
    "gene_name",
    "gene_biotype",
]


def strip_version(ids: pd.Series) -> pd.Series:
    """Remove trailing ``.N`` version suffixes (ENST00000456328.2 -> ENST00000456328)."""
    return ids.str.replace(r"\.\d+$", "", regex=True)


class AnnotationService:
    """
    Stateless service for GTF feature tables and derived lookups.
    """

    def __init__(self, strip_version: bool = False):
        """
        Initialize the annotation service.

        Args:
            strip_version: Remove ``.N`` suffixes from gene and transcript ids
        """
        self.strip_version = strip_version

    def read_gtf(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Parse a GTF file into a feature table.

        Args:
            path: GTF file (plain or gzip-compressed)

        Returns:
            pd.DataFrame: One row per feature with the 8 fixed GTF columns
            plus one column per extracted attribute. Attributes missing
            from a feature are NA.

        Raises:
            FileNotFoundError: If the file does not exist
            AnnotationFormatError: If the file is not 9-column GTF
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Annotation file not found: {path}")

        logger.info(f"Reading GTF annotation from {path}")
        try:
            df = pd.read_csv(
                path,
                sep="\t",
                comment="#",
                header=None,
                dtype=str,
                keep_default_na=False,
                quoting=csv.QUOTE_NONE,
            )
        except pd.errors.EmptyDataError:
            raise AnnotationFormatError(
                f"Annotation file {path} has no features", details={"path": str(path)}
            )

        if df.shape[1] != len(GTF_COLUMNS):
            raise AnnotationFormatError(
                f"Expected {len(GTF_COLUMNS)} tab-separated columns in {path}, "
                f"found {df.shape[1]}",
                details={"path": str(path), "n_columns": int(df.shape[1])},
            )
        df.columns = GTF_COLUMNS

        try:
            df["start"] = df["start"].astype(int)
            df["end"] = df["end"].astype(int)
        except ValueError as e:
            raise AnnotationFormatError(
                f"Non-integer coordinates in {path}: {e}", details={"path": str(path)}
            ) from e

        for key in GTF_ATTRIBUTES:
            df[key] = df["attribute"].str.extract(rf'(?:^|;)\s*{key} "([^"]*)"', expand=False)

        if self.strip_version:
            for key in ("gene_id", "transcript_id"):
                df[key] = strip_version(df[key])

        df = df.drop(columns=["attribute"])
        logger.info(
            f"Parsed {len(df)} features "
            f"({int((df['type'] == 'transcript').sum())} transcripts)"
        )
        return df

    @staticmethod
    def _transcripts(features: pd.DataFrame) -> pd.DataFrame:
        missing = [c for c in ("type", "transcript_id", "gene_id") if c not in features]
        if missing:
            raise AnnotationFormatError(
                f"Feature table lacks column(s) {missing}",
                details={"missing_columns": missing},
            )
        return features[features["type"] == "transcript"]

    def build_tx2gene(self, features: pd.DataFrame) -> pd.DataFrame:
        """
        Derive the transcript -> gene map.

        Args:
            features: Feature table from ``read_gtf``

        Returns:
            pd.DataFrame: Columns ``transcript_id``, ``gene_id``; transcript
            rows only, no missing ids, no duplicate pairs

        Raises:
            AnnotationFormatError: If one transcript maps to several genes
        """
        tx2gene = (
            self._transcripts(features)[["transcript_id", "gene_id"]]
            .dropna()
            .drop_duplicates()
            .reset_index(drop=True)
        )

        multi = tx2gene["transcript_id"][tx2gene["transcript_id"].duplicated()]
        if len(multi):
            raise AnnotationFormatError(
                f"{multi.nunique()} transcript(s) map to more than one gene",
                details={"examples": sorted(set(multi))[:5]},
            )

        logger.info(
            f"tx2gene: {len(tx2gene)} transcripts -> "
            f"{tx2gene['gene_id'].nunique()} genes"
        )
        return tx2gene

    def build_transcript_metadata(self, features: pd.DataFrame) -> pd.DataFrame:
        """
        Derive the transcript metadata table.

        Args:
            features: Feature table from ``read_gtf``

        Returns:
            pd.DataFrame: Distinct ``transcript_id, gene_id, gene_name,
            gene_biotype`` rows for transcript features
        """
        transcripts = self._transcripts(features)
        for column in TRANSCRIPT_METADATA_COLUMNS:
            if column not in transcripts.columns:
                transcripts = transcripts.assign(**{column: pd.NA})

        metadata = (
            transcripts[TRANSCRIPT_METADATA_COLUMNS]
            .drop_duplicates()
            .reset_index(drop=True)
        )
        logger.info(f"Transcript metadata: {len(metadata)} rows")
        return metadata

    def load(self, path: Union[str, Path]):
        """
        Read a GTF and derive both lookups.

        Returns:
            Tuple of (tx2gene, transcript_metadata)
        """
        features = self.read_gtf(path)
        return self.build_tx2gene(features), self.build_transcript_metadata(features)
