"""
Metadata loader service.

Produces one row-per-sample table from either the SRA (queried by project
accession) or a local tab-separated file, and optionally joins the two
sources on their identifiers.
"""

from pathlib import Path
from typing import List, Optional, Union

import pandas as pd

from dgeprep.core.exceptions import MissingFieldError
from dgeprep.tools.providers.sra_provider import SRAProvider, SRAProviderConfig
from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)

# Tokens read as missing values from local files
NA_TOKENS: List[str] = ["", "NA"]


class MetadataLoaderService:
    """
    Stateless service that loads per-sample metadata tables.

    The remote path delegates to ``SRAProvider``; the local path reads a
    tab-delimited file with a header row. Both return a DataFrame whose
    first column is the sample identifier.
    """

    def __init__(self, provider: Optional[SRAProvider] = None):
        """
        Initialize the loader.

        Args:
            provider: Optional SRA provider; created lazily with default
                configuration on first remote load
        """
        self._provider = provider

    @property
    def provider(self) -> SRAProvider:
        if self._provider is None:
            self._provider = SRAProvider(SRAProviderConfig())
        return self._provider

    def load_remote(self, project_id: str) -> pd.DataFrame:
        """
        Load run-level metadata for a project from the SRA.

        Args:
            project_id: Project accession (SRP, PRJNA, PRJEB, ...)

        Returns:
            pd.DataFrame: One row per run, identifier column first

        Raises:
            MissingFieldError: If a summary lacks a required field
            SRANotFoundError: If the project has no records
            SRAConnectionError: If NCBI is unreachable after retries
        """
        logger.info(f"Loading remote metadata for {project_id}")
        df = self.provider.get_project_metadata(project_id)
        id_field = self.provider.config.id_field
        return self._key_by(df, id_field, source=project_id)

    def load_local(
        self, path: Union[str, Path], id_column: str = "sample_id"
    ) -> pd.DataFrame:
        """
        Load a local tab-delimited metadata table.

        All values are read as strings; empty cells and the literal token
        ``NA`` become missing values.

        Args:
            path: Tab-separated file, first row = column headers
            id_column: Column holding the sample identifier

        Returns:
            pd.DataFrame: Metadata table, identifier column first

        Raises:
            FileNotFoundError: If the file does not exist
            MissingFieldError: If the identifier column is absent
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Metadata file not found: {path}")

        df = pd.read_csv(
            path,
            sep="\t",
            dtype=str,
            na_values=NA_TOKENS,
            keep_default_na=False,
        )
        logger.info(f"Loaded {len(df)} rows x {len(df.columns)} columns from {path}")
        return self._key_by(df, id_column, source=str(path))

    @staticmethod
    def _key_by(df: pd.DataFrame, id_column: str, source: str) -> pd.DataFrame:
        if id_column not in df.columns:
            raise MissingFieldError(
                f"Identifier column '{id_column}' not found in metadata from {source}",
                details={
                    "record": source,
                    "missing_fields": [id_column],
                    "available_fields": list(df.columns),
                },
            )

        n_missing = int(df[id_column].isna().sum())
        if n_missing:
            raise MissingFieldError(
                f"{n_missing} row(s) in metadata from {source} have no '{id_column}'",
                details={"record": source, "missing_fields": [id_column]},
            )

        ordered = [id_column] + [c for c in df.columns if c != id_column]
        return df[ordered].reset_index(drop=True)

    def merge_sources(
        self,
        remote: pd.DataFrame,
        local: pd.DataFrame,
        remote_key: str,
        local_key: str,
        how: str = "inner",
    ) -> pd.DataFrame:
        """
        Join remote and local metadata on their sample identifiers.

        Samples present in only one source are a data-availability gap and
        are reported at INFO level, not raised.

        Args:
            remote: Table from ``load_remote``
            local: Table from ``load_local``
            remote_key: Identifier column in ``remote``
            local_key: Identifier column in ``local``
            how: Join type passed to ``pandas.merge`` (inner, left, right, outer)

        Returns:
            pd.DataFrame: Joined table keyed by ``local_key``
        """
        for frame, key, name in ((remote, remote_key, "remote"), (local, local_key, "local")):
            if key not in frame.columns:
                raise MissingFieldError(
                    f"Join key '{key}' not found in {name} metadata",
                    details={"missing_fields": [key], "available_fields": list(frame.columns)},
                )

        remote_ids = set(remote[remote_key].dropna())
        local_ids = set(local[local_key].dropna())
        only_remote = remote_ids - local_ids
        only_local = local_ids - remote_ids
        if only_remote:
            logger.info(f"{len(only_remote)} sample(s) present only in remote metadata")
        if only_local:
            logger.info(f"{len(only_local)} sample(s) present only in local metadata")

        merged = pd.merge(
            local,
            remote,
            left_on=local_key,
            right_on=remote_key,
            how=how,
            suffixes=("", "_remote"),
        )
        if how in ("right", "outer"):
            merged[local_key] = merged[local_key].fillna(merged[remote_key])

        logger.info(
            f"Merged metadata: {len(merged)} rows ({how} join, "
            f"{len(remote_ids & local_ids)} shared identifiers)"
        )
        ordered = [local_key] + [c for c in merged.columns if c != local_key]
        return merged[ordered].reset_index(drop=True)
