"""
Consistency check between curated sample metadata and a quantification
bundle.

The downstream model pairs the i-th metadata row with the i-th bundle
column, so both the number of samples and their positional order must
agree. The check only reports; deciding what to do with a failed report
is left to the caller.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from dgeprep.services.analysis.quantification_service import QuantificationBundle
from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ConsistencyReport:
    """Outcome of a metadata vs. bundle consistency check."""

    passed: bool
    n_metadata: int
    n_bundle: int
    mismatch_positions: List[int] = field(default_factory=list)
    mismatches: List[Tuple[int, Optional[str], Optional[str]]] = field(
        default_factory=list
    )

    @property
    def counts_match(self) -> bool:
        return self.n_metadata == self.n_bundle

    def summary(self) -> str:
        if self.passed:
            return f"Consistent: {self.n_metadata} samples in matching order"
        parts = []
        if not self.counts_match:
            parts.append(
                f"sample count differs (metadata={self.n_metadata}, bundle={self.n_bundle})"
            )
        if self.mismatch_positions:
            parts.append(f"{len(self.mismatch_positions)} position(s) differ")
        return "Inconsistent: " + "; ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "n_metadata": self.n_metadata,
            "n_bundle": self.n_bundle,
            "mismatch_positions": list(self.mismatch_positions),
            "mismatches": [list(m) for m in self.mismatches],
        }


SampleSource = Union[pd.DataFrame, Sequence[str]]
BundleSource = Union[QuantificationBundle, pd.DataFrame, Sequence[str]]


class ConsistencyService:
    """
    Stateless comparison of sample identifier sequences.
    """

    @staticmethod
    def _metadata_ids(samples: SampleSource, id_column: str) -> List[str]:
        if isinstance(samples, pd.DataFrame):
            if id_column not in samples.columns:
                raise KeyError(f"Identifier column '{id_column}' not in sample table")
            return [str(s) for s in samples[id_column]]
        return [str(s) for s in samples]

    @staticmethod
    def _bundle_ids(bundle: BundleSource) -> List[str]:
        if isinstance(bundle, QuantificationBundle):
            return bundle.sample_ids
        if isinstance(bundle, pd.DataFrame):
            return [str(c) for c in bundle.columns]
        return [str(s) for s in bundle]

    def check(
        self,
        samples: SampleSource,
        bundle: BundleSource,
        id_column: str = "sample_id",
    ) -> ConsistencyReport:
        """
        Compare metadata identifiers with bundle sample identifiers.

        Args:
            samples: Curated sample table, or a plain id sequence
            bundle: Quantification bundle, a genes x samples matrix, or a
                plain id sequence
            id_column: Identifier column when ``samples`` is a table

        Returns:
            ConsistencyReport: ``passed`` is True iff both sequences have
            the same length and agree at every position. When lengths
            differ, the tail of the longer sequence counts as mismatched.
        """
        metadata_ids = self._metadata_ids(samples, id_column)
        bundle_ids = self._bundle_ids(bundle)

        mismatches: List[Tuple[int, Optional[str], Optional[str]]] = []
        for position in range(max(len(metadata_ids), len(bundle_ids))):
            meta_id = metadata_ids[position] if position < len(metadata_ids) else None
            bundle_id = bundle_ids[position] if position < len(bundle_ids) else None
            if meta_id != bundle_id:
                mismatches.append((position, meta_id, bundle_id))

        report = ConsistencyReport(
            passed=not mismatches and len(metadata_ids) == len(bundle_ids),
            n_metadata=len(metadata_ids),
            n_bundle=len(bundle_ids),
            mismatch_positions=[m[0] for m in mismatches],
            mismatches=mismatches,
        )

        if report.passed:
            logger.info(report.summary())
        else:
            logger.warning(report.summary())
            for position, meta_id, bundle_id in mismatches[:10]:
                logger.warning(
                    f"  position {position}: metadata={meta_id!r} bundle={bundle_id!r}"
                )
        return report
