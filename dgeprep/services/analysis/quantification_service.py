"""
Quantification aggregation service.

Discovers per-sample transcript quantification files produced by Salmon
(``quant.sf``) or Kallisto (``abundance.tsv``), restricts them to the
curated sample set, and summarizes transcript-level estimates to gene level
using the transcript-to-gene map.

Gene-level summarization follows the tximport convention:

- counts and abundance (TPM) are summed over a gene's transcripts,
- length is the abundance-weighted mean effective length of the gene's
  transcripts; where the gene has zero abundance in a sample, the mean of
  its transcripts' across-sample average lengths is used instead.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from dgeprep.core.exceptions import (
    AmbiguousSampleFileError,
    NoQuantificationFilesFoundError,
    QuantificationFormatError,
    UnmappedTranscriptError,
)
from dgeprep.services.annotation.annotation_service import strip_version
from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)

QUANT_FILE_NAMES: Dict[str, str] = {
    "salmon": "quant.sf",
    "kallisto": "abundance.tsv",
}

# Tool column -> normalized column
QUANT_COLUMN_MAPS: Dict[str, Dict[str, str]] = {
    "salmon": {
        "Name": "transcript_id",
        "Length": "length",
        "EffectiveLength": "effective_length",
        "TPM": "abundance",
        "NumReads": "counts",
    },
    "kallisto": {
        "target_id": "transcript_id",
        "length": "length",
        "eff_length": "effective_length",
        "tpm": "abundance",
        "est_counts": "counts",
    },
}

QUANT_COLUMNS: List[str] = [
    "transcript_id",
    "length",
    "effective_length",
    "abundance",
    "counts",
]

VALID_UNMAPPED_POLICIES = ["error", "drop"]
VALID_COUNTS_FROM_ABUNDANCE = ["no", "scaledTPM", "lengthScaledTPM"]


@dataclass
class QuantificationBundle:
    """
    Gene-level quantification for a set of samples.

    ``counts``, ``abundance`` and ``length`` are genes x samples with
    identical index (sorted gene ids) and columns (sample ids in file index
    order).
    """

    counts: pd.DataFrame
    abundance: pd.DataFrame
    length: pd.DataFrame
    counts_from_abundance: str = "no"
    n_dropped_transcripts: int = 0
    source_files: Dict[str, Path] = field(default_factory=dict)

    @property
    def sample_ids(self) -> List[str]:
        return [str(c) for c in self.counts.columns]

    @property
    def gene_ids(self) -> List[str]:
        return [str(g) for g in self.counts.index]

    @property
    def shape(self):
        return self.counts.shape


class QuantificationService:
    """
    Stateless service aggregating transcript quantification to gene level.
    """

    def __init__(
        self,
        tool: str = "salmon",
        unmapped_policy: str = "error",
        counts_from_abundance: str = "no",
        ignore_tx_version: bool = False,
    ):
        """
        Initialize the aggregator.

        Args:
            tool: Quantification tool that produced the files (salmon, kallisto)
            unmapped_policy: What to do with transcripts missing from tx2gene:
                "error" aborts, "drop" removes them and records the count
            counts_from_abundance: "no", "scaledTPM" or "lengthScaledTPM"
            ignore_tx_version: Strip ``.N`` suffixes before matching ids
        """
        if tool not in QUANT_FILE_NAMES:
            raise ValueError(
                f"Unsupported tool: '{tool}'. Must be one of: {', '.join(QUANT_FILE_NAMES)}"
            )
        if unmapped_policy not in VALID_UNMAPPED_POLICIES:
            raise ValueError(
                f"Invalid unmapped_policy: '{unmapped_policy}'. "
                f"Must be one of: {', '.join(VALID_UNMAPPED_POLICIES)}"
            )
        if counts_from_abundance not in VALID_COUNTS_FROM_ABUNDANCE:
            raise ValueError(
                f"Invalid counts_from_abundance: '{counts_from_abundance}'. "
                f"Must be one of: {', '.join(VALID_COUNTS_FROM_ABUNDANCE)}"
            )

        self.tool = tool
        self.unmapped_policy = unmapped_policy
        self.counts_from_abundance = counts_from_abundance
        self.ignore_tx_version = ignore_tx_version

    @property
    def file_name(self) -> str:
        return QUANT_FILE_NAMES[self.tool]

    # ------------------------------------------------------------------
    # File index
    # ------------------------------------------------------------------

    def discover_files(self, root: Union[str, Path]) -> Dict[str, Path]:
        """
        Find every quantification file below ``root``.

        The sample id of a file is the name of its immediate parent
        directory. Files are visited in sorted path order so the index
        order is reproducible.

        Args:
            root: Directory to search recursively

        Returns:
            Dict[str, Path]: Ordered sample id -> file path

        Raises:
            NoQuantificationFilesFoundError: If nothing matches
            AmbiguousSampleFileError: If two files share a sample id
        """
        root = Path(root)
        paths = sorted(root.rglob(self.file_name)) if root.is_dir() else []

        if not paths:
            raise NoQuantificationFilesFoundError(
                f"No {self.tool} quantification files ({self.file_name}) found in {root}",
                details={
                    "root": str(root),
                    "file_name": self.file_name,
                    "n_discovered": 0,
                    "suggestions": [
                        "Check the quantification root directory",
                        f"Check the tool setting (currently '{self.tool}')",
                    ],
                },
            )

        index: Dict[str, Path] = {}
        for path in paths:
            sample_id = path.parent.name
            if sample_id in index:
                raise AmbiguousSampleFileError(
                    f"Sample '{sample_id}' has more than one {self.file_name}: "
                    f"{index[sample_id]} and {path}",
                    details={
                        "sample_id": sample_id,
                        "paths": [str(index[sample_id]), str(path)],
                    },
                )
            index[sample_id] = path

        logger.info(f"Discovered {len(index)} {self.tool} quantification files in {root}")
        return index

    def restrict_index(
        self, index: Dict[str, Path], sample_ids: Sequence[str]
    ) -> Dict[str, Path]:
        """
        Keep only files whose sample id is in ``sample_ids``.

        Index order is preserved. Samples with metadata but no file are a
        data-availability gap and are logged, not raised.

        Raises:
            NoQuantificationFilesFoundError: If no file survives
        """
        wanted = {str(s) for s in sample_ids}
        restricted = {sid: path for sid, path in index.items() if sid in wanted}

        n_excluded = len(index) - len(restricted)
        if n_excluded:
            logger.info(f"Excluded {n_excluded} quantification file(s) without retained metadata")

        absent = sorted(wanted - set(index))
        if absent:
            logger.info(
                f"{len(absent)} retained sample(s) have no quantification file: {absent[:10]}"
            )

        if not restricted:
            raise NoQuantificationFilesFoundError(
                "None of the discovered quantification files belongs to a retained sample",
                details={
                    "file_name": self.file_name,
                    "n_discovered": len(index),
                    "n_retained_samples": len(wanted),
                },
            )

        logger.info(f"Restricted file index to {len(restricted)} sample(s)")
        return restricted

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_quant_file(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Read one quantification file into normalized columns.

        Returns:
            pd.DataFrame: ``transcript_id, length, effective_length,
            abundance, counts``

        Raises:
            QuantificationFormatError: If expected columns are missing,
                values are not numeric, or transcript ids repeat
        """
        path = Path(path)
        column_map = QUANT_COLUMN_MAPS[self.tool]

        try:
            df = pd.read_csv(path, sep="\t", dtype={next(iter(column_map)): str})
        except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
            raise QuantificationFormatError(
                f"Cannot parse quantification file {path}: {e}",
                details={"path": str(path)},
            ) from e

        missing = [c for c in column_map if c not in df.columns]
        if missing:
            raise QuantificationFormatError(
                f"Quantification file {path} lacks column(s) {missing}",
                details={
                    "path": str(path),
                    "missing_columns": missing,
                    "available_columns": list(df.columns),
                    "tool": self.tool,
                },
            )

        df = df[list(column_map)].rename(columns=column_map)

        numeric = [c for c in QUANT_COLUMNS if c != "transcript_id"]
        try:
            df[numeric] = df[numeric].astype(float)
        except ValueError as e:
            raise QuantificationFormatError(
                f"Non-numeric quantification values in {path}: {e}",
                details={"path": str(path)},
            ) from e

        if self.ignore_tx_version:
            df["transcript_id"] = strip_version(df["transcript_id"])

        duplicated = df["transcript_id"][df["transcript_id"].duplicated()]
        if len(duplicated):
            raise QuantificationFormatError(
                f"Quantification file {path} repeats {duplicated.nunique()} transcript id(s)",
                details={"path": str(path), "examples": sorted(set(duplicated))[:5]},
            )

        return df[QUANT_COLUMNS]

    def _prepare_tx2gene(self, tx2gene: pd.DataFrame) -> pd.Series:
        missing = [c for c in ("transcript_id", "gene_id") if c not in tx2gene.columns]
        if missing:
            raise ValueError(f"tx2gene lacks column(s) {missing}")

        table = tx2gene[["transcript_id", "gene_id"]].dropna()
        if self.ignore_tx_version:
            table = table.assign(transcript_id=strip_version(table["transcript_id"]))
        table = table.drop_duplicates()
        return table.set_index("transcript_id")["gene_id"]

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def summarize_to_gene(
        self, index: Dict[str, Path], tx2gene: pd.DataFrame
    ) -> QuantificationBundle:
        """
        Summarize transcript quantification to gene level.

        Args:
            index: Ordered sample id -> quantification file
            tx2gene: Transcript-to-gene map (``transcript_id``, ``gene_id``)

        Returns:
            QuantificationBundle: Gene-level counts, abundance and length

        Raises:
            UnmappedTranscriptError: If a file holds transcripts absent from
                ``tx2gene`` and the policy is "error"
        """
        mapping = self._prepare_tx2gene(tx2gene)

        counts: Dict[str, pd.Series] = {}
        abundance: Dict[str, pd.Series] = {}
        length: Dict[str, pd.Series] = {}
        n_dropped = 0

        for sample_id, path in index.items():
            quant = self.read_quant_file(path).set_index("transcript_id")

            unmapped = quant.index[~quant.index.isin(mapping.index)]
            if len(unmapped):
                if self.unmapped_policy == "error":
                    raise UnmappedTranscriptError(
                        f"{len(unmapped)} transcript(s) in sample '{sample_id}' "
                        "are not in the transcript-to-gene map",
                        details={
                            "sample_id": sample_id,
                            "n_unmapped": len(unmapped),
                            "examples": list(unmapped[:5]),
                            "suggestions": [
                                "Use the annotation release the quantification index was built from",
                                "Set ignore_tx_version=True if ids differ only by version suffix",
                                "Set unmapped_policy='drop' to discard unmapped transcripts",
                            ],
                        },
                    )
                logger.warning(
                    f"Dropping {len(unmapped)} unmapped transcript(s) from sample '{sample_id}'"
                )
                quant = quant.drop(index=unmapped)
                n_dropped += len(unmapped)

            counts[sample_id] = quant["counts"]
            abundance[sample_id] = quant["abundance"]
            length[sample_id] = quant["effective_length"]

        sample_order = list(index)
        tx_counts = pd.DataFrame(counts).reindex(columns=sample_order).fillna(0.0)
        tx_abundance = pd.DataFrame(abundance).reindex(columns=sample_order).fillna(0.0)
        tx_length = pd.DataFrame(length).reindex(columns=sample_order)
        # Transcripts absent from a sample take their mean length elsewhere
        tx_length = tx_length.T.fillna(tx_length.mean(axis=1)).T

        genes = mapping.reindex(tx_counts.index)
        genes.name = "gene_id"

        gene_counts = tx_counts.groupby(genes).sum()
        gene_abundance = tx_abundance.groupby(genes).sum()
        weighted_length = (tx_abundance * tx_length).groupby(genes).sum()

        ave_gene_length = tx_length.mean(axis=1).groupby(genes).mean()
        fallback = pd.DataFrame(
            np.repeat(
                ave_gene_length.reindex(gene_abundance.index).to_numpy()[:, None],
                len(sample_order),
                axis=1,
            ),
            index=gene_abundance.index,
            columns=gene_abundance.columns,
        )
        with np.errstate(divide="ignore", invalid="ignore"):
            gene_length = weighted_length / gene_abundance
        gene_length = gene_length.where(gene_abundance > 0, fallback)

        if self.counts_from_abundance != "no":
            gene_counts = self._counts_from_abundance(
                gene_counts, gene_abundance, gene_length
            )

        logger.info(
            f"Summarized {len(tx_counts)} transcripts to {len(gene_counts)} genes "
            f"across {len(sample_order)} samples"
        )
        if n_dropped:
            logger.info(f"Dropped {n_dropped} unmapped transcript(s) in total")

        return QuantificationBundle(
            counts=gene_counts,
            abundance=gene_abundance,
            length=gene_length,
            counts_from_abundance=self.counts_from_abundance,
            n_dropped_transcripts=n_dropped,
            source_files=dict(index),
        )

    def _counts_from_abundance(
        self,
        counts: pd.DataFrame,
        abundance: pd.DataFrame,
        length: pd.DataFrame,
    ) -> pd.DataFrame:
        """Rescale abundance to each sample's library size."""
        if self.counts_from_abundance == "lengthScaledTPM":
            scaled = abundance.mul(length.mean(axis=1), axis=0)
        else:
            scaled = abundance.copy()

        library_size = counts.sum(axis=0)
        scaled_total = scaled.sum(axis=0)
        factor = (library_size / scaled_total.replace(0, np.nan)).fillna(0.0)
        return scaled.mul(factor, axis=1)

    def aggregate(
        self,
        root: Union[str, Path],
        sample_ids: Sequence[str],
        tx2gene: pd.DataFrame,
        index: Optional[Dict[str, Path]] = None,
    ) -> QuantificationBundle:
        """
        Discover, restrict and summarize in one call.

        Args:
            root: Quantification root directory
            sample_ids: Retained sample ids from curation
            tx2gene: Transcript-to-gene map
            index: Pre-built file index; skips discovery when given

        Returns:
            QuantificationBundle: Gene-level bundle for the retained samples
        """
        if index is None:
            index = self.discover_files(root)
        restricted = self.restrict_index(index, sample_ids)
        return self.summarize_to_gene(restricted, tx2gene)
