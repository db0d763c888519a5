"""
Metadata curation service.

Turns a raw per-sample table into the finalized Sample Record set:

1. deduplicate rows per sample identifier (first occurrence wins),
2. project to the retained columns,
3. apply the ordered, conjunctive inclusion rules,
4. derive one group label per row from ordered (pattern, label) rules.

The output identifier set is always a subset of the input, free of
duplicates, and every row carries exactly one label.
"""

from typing import List, Sequence

import pandas as pd

from dgeprep.config.curation_config import CurationConfig, InclusionRule
from dgeprep.core.exceptions import SchemaMismatchError
from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class MetadataCurationService:
    """
    Stateless curation of sample metadata driven by a ``CurationConfig``.
    """

    def __init__(self, config: CurationConfig):
        """
        Initialize the curator.

        Args:
            config: Curation configuration (columns, rules, labels)
        """
        self.config = config

    def curate(self, raw: pd.DataFrame) -> pd.DataFrame:
        """
        Run every curation step in order.

        Args:
            raw: Raw metadata table from the loader

        Returns:
            pd.DataFrame: Curated sample table

        Raises:
            SchemaMismatchError: If the configuration references columns
                absent from the input
        """
        self._require_columns(raw, [self.config.id_column], step="deduplicate")

        n_input = len(raw)
        df = self.deduplicate(raw)
        df = self.project(df)
        df = self.filter(df)
        df = self.assign_labels(df)

        logger.info(f"Curated metadata: {n_input} input rows -> {len(df)} samples")
        if self.config.annotation_column and len(df):
            counts = df[self.config.label_column].value_counts()
            logger.info(
                "Group sizes: "
                + ", ".join(f"{label}={n}" for label, n in counts.items())
            )
        return df

    def _require_columns(
        self, df: pd.DataFrame, columns: Sequence[str], step: str
    ) -> None:
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise SchemaMismatchError(
                f"Column(s) {missing} required by the '{step}' step are not in the metadata",
                details={
                    "missing_columns": missing,
                    "available_columns": list(df.columns),
                    "step": step,
                },
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def deduplicate(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Keep the first row per sample identifier.

        Rows are compared on every column except
        ``config.dedup_exclude_columns``. Rows identical on those columns
        are benign duplicates (typically the same sample listed with two
        file references); identifiers that remain duplicated with
        conflicting covariates are reported at WARNING. Either way only the
        first occurrence is kept. Applying this twice is a no-op.
        """
        id_column = self.config.id_column
        compare = [
            c for c in df.columns if c not in set(self.config.dedup_exclude_columns)
        ]

        benign = df.duplicated(subset=compare, keep="first")
        n_benign = int(benign.sum())
        if n_benign:
            logger.info(
                f"Dropping {n_benign} duplicate row(s) that differ only in "
                f"{self.config.dedup_exclude_columns}"
            )

        remaining = df.loc[~benign]
        conflicting = remaining[id_column][remaining[id_column].duplicated(keep=False)]
        if len(conflicting):
            conflicting_ids = sorted(set(conflicting))
            logger.warning(
                f"{len(conflicting_ids)} identifier(s) have conflicting duplicate rows; "
                f"keeping the first occurrence: {conflicting_ids[:10]}"
            )

        deduplicated = df.drop_duplicates(subset=[id_column], keep="first")
        return deduplicated.reset_index(drop=True)

    def project(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Select the retained columns in configured order.

        The identifier column is always kept and placed first when the
        configuration omits it.
        """
        retain = self.config.retain_columns
        if retain is None:
            return df.copy()

        self._require_columns(df, retain, step="project")

        columns = list(retain)
        if self.config.id_column not in columns:
            columns.insert(0, self.config.id_column)
        return df[columns].copy()

    def filter(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Apply every inclusion rule; a row must satisfy all of them.
        """
        rules = self.config.inclusion_rules
        self._require_columns(df, [rule.column for rule in rules], step="filter")

        keep = pd.Series(True, index=df.index)
        for rule in rules:
            passed = self._evaluate_rule(df, rule)
            removed = int((keep & ~passed).sum())
            keep &= passed
            logger.info(f"Inclusion rule '{rule.describe()}' removed {removed} row(s)")

        return df.loc[keep].reset_index(drop=True)

    @staticmethod
    def _evaluate_rule(df: pd.DataFrame, rule: InclusionRule) -> pd.Series:
        column = df[rule.column]
        op = rule.operator

        if op == "is_missing":
            return column.isna()
        if op == "not_missing":
            return column.notna()

        if op in ("ge", "gt", "le", "lt"):
            # Missing or non-numeric values fail ordered comparisons
            numeric = pd.to_numeric(column, errors="coerce")
            threshold = float(rule.value)
            result = {
                "ge": numeric >= threshold,
                "gt": numeric > threshold,
                "le": numeric <= threshold,
                "lt": numeric < threshold,
            }[op]
            return result.fillna(False).astype(bool)

        present = column.notna()
        if op in ("eq", "ne", "in", "not_in"):
            values = list(rule.value) if op in ("in", "not_in") else [rule.value]
            if values and all(_is_number(v) for v in values):
                # Numeric values match by number, so 3 matches "3", 3.0 and "3.0"
                numeric = pd.to_numeric(column, errors="coerce")
                matched = numeric.isin([float(v) for v in values])
            else:
                matched = column.astype(str).isin([str(v) for v in values])
            if op in ("eq", "in"):
                return present & matched
            return ~present | ~matched
        if op == "contains":
            return present & column.astype(str).str.contains(str(rule.value), regex=False)

        raise ValueError(f"Unsupported operator: {op}")

    def assign_labels(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Derive the group label from the annotation column.

        Rules are scanned in configuration order and the first match wins;
        rows with no match or missing annotation get the default label.
        Skipped when no annotation column is configured.
        """
        annotation_column = self.config.annotation_column
        if annotation_column is None:
            return df

        self._require_columns(df, [annotation_column], step="label")

        labelled = df.copy()
        labelled[self.config.label_column] = [
            self.label_for(value) for value in labelled[annotation_column]
        ]
        return labelled

    def label_for(self, annotation) -> str:
        """Return the label of the first rule matching ``annotation``."""
        if annotation is None or pd.isna(annotation):
            return self.config.default_label

        text = str(annotation)
        for rule in self.config.label_rules:
            if rule.matches(text):
                return rule.label
        return self.config.default_label


def align_to_index(
    samples: pd.DataFrame, sample_ids: Sequence[str], id_column: str = "sample_id"
) -> pd.DataFrame:
    """
    Reorder and subset a curated sample table to a given identifier order.

    Used to line the metadata up with the quantification file index before
    the consistency check. Identifiers in ``samples`` but not in
    ``sample_ids`` are dropped and logged; identifiers in ``sample_ids``
    without metadata are skipped.

    Args:
        samples: Curated sample table
        sample_ids: Target identifier order (e.g. bundle columns)
        id_column: Identifier column in ``samples``

    Returns:
        pd.DataFrame: Aligned sample table
    """
    if id_column not in samples.columns:
        raise SchemaMismatchError(
            f"Identifier column '{id_column}' not in sample table",
            details={"missing_columns": [id_column], "available_columns": list(samples.columns)},
        )

    target: List[str] = [str(s) for s in sample_ids]
    indexed = samples.set_index(samples[id_column].astype(str), drop=False)
    present = [s for s in target if s in indexed.index]

    dropped = sorted(set(indexed.index) - set(present))
    if dropped:
        logger.info(f"Dropping {len(dropped)} sample(s) without quantification: {dropped[:10]}")
    absent = [s for s in target if s not in indexed.index]
    if absent:
        logger.warning(f"{len(absent)} indexed sample(s) have no metadata: {absent[:10]}")

    return indexed.loc[present].reset_index(drop=True)
