"""
Export of the assembled differential-expression input archive.

One ``.h5ad`` file holds the three objects the downstream model needs:

- the quantification bundle: ``X`` (counts), ``layers["abundance"]``,
  ``layers["length"]`` as samples x genes, plus bundle attributes in
  ``uns["bundle"]``
- the curated sample table: ``obs``
- the transcript metadata table: ``uns["transcript_metadata"]``

The file name embeds the creation date. A file is written once: the data
goes to a temporary sibling first and is renamed into place, so an
existing archive is never appended to or partially updated.
"""

import os
from datetime import date
from pathlib import Path
from typing import Optional, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd

from dgeprep.core.exceptions import ConsistencyError
from dgeprep.services.analysis.quantification_service import QuantificationBundle
from dgeprep.services.quality.consistency_service import ConsistencyService
from dgeprep.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_PREFIX = "dds_input"


def archive_name(prefix: str = DEFAULT_PREFIX, created: Optional[date] = None) -> str:
    """Return ``<prefix>_<YYYY-MM-DD>.h5ad``."""
    created = created or date.today()
    return f"{prefix}_{created.isoformat()}.h5ad"


def _to_writable(df: pd.DataFrame) -> pd.DataFrame:
    """
    Make a table safe for HDF5 storage.

    Object columns may hold missing values next to strings, which h5py
    cannot store as a string array. They are written as categoricals with
    string categories; missing values stay missing.
    """
    df = df.copy()
    df.columns = [str(c) for c in df.columns]
    for col in df.columns:
        if df[col].dtype == object or pd.api.types.is_string_dtype(df[col]):
            df[col] = df[col].map(lambda v: v if pd.isna(v) else str(v)).astype("category")
    return df


def _from_writable(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    for col in df.columns:
        if isinstance(df[col].dtype, pd.CategoricalDtype):
            df[col] = df[col].astype(object).where(df[col].notna(), np.nan)
    return df


class BundleExportService:
    """
    Writes and reads the persisted differential-expression input archive.
    """

    def __init__(self, compression: Optional[str] = "gzip"):
        """
        Initialize the exporter.

        Args:
            compression: HDF5 compression for the matrices (None disables)
        """
        self.compression = compression
        self.checker = ConsistencyService()

    def export(
        self,
        bundle: QuantificationBundle,
        samples: pd.DataFrame,
        transcript_metadata: pd.DataFrame,
        output_dir: Union[str, Path],
        id_column: str = "sample_id",
        prefix: str = DEFAULT_PREFIX,
        created: Optional[date] = None,
        overwrite: bool = False,
    ) -> Path:
        """
        Write the archive.

        Args:
            bundle: Gene-level quantification bundle
            samples: Curated sample table, rows in bundle column order
            transcript_metadata: Transcript metadata table
            output_dir: Directory for the archive
            id_column: Identifier column in ``samples``
            prefix: File name prefix
            created: Creation date embedded in the name (default: today)
            overwrite: Replace an existing archive of the same name

        Returns:
            Path: Written archive

        Raises:
            ConsistencyError: If ``samples`` and ``bundle`` disagree
            FileExistsError: If the archive exists and ``overwrite`` is False
        """
        report = self.checker.check(samples, bundle, id_column=id_column)
        if not report.passed:
            raise ConsistencyError(
                f"Sample metadata and quantification bundle disagree: {report.summary()}",
                details={
                    **report.to_dict(),
                    "suggestions": [
                        "Reorder the sample table to the bundle column order "
                        "(align_to_index) and re-run the check"
                    ],
                },
            )

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        target = output_dir / archive_name(prefix, created)
        if target.exists() and not overwrite:
            raise FileExistsError(
                f"Archive {target} already exists; pass overwrite=True to replace it"
            )

        adata = self._to_anndata(bundle, samples, transcript_metadata, id_column)

        tmp_path = target.with_name(f".{target.stem}.tmp.h5ad")
        try:
            adata.write_h5ad(tmp_path, compression=self.compression)
            os.replace(tmp_path, target)
        except Exception:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

        logger.info(
            f"Exported {adata.n_obs} samples x {adata.n_vars} genes to {target} "
            f"({target.stat().st_size / 1024**2:.2f} MB)"
        )
        return target

    def _to_anndata(
        self,
        bundle: QuantificationBundle,
        samples: pd.DataFrame,
        transcript_metadata: pd.DataFrame,
        id_column: str,
    ) -> ad.AnnData:
        obs = _to_writable(samples)
        obs.index = pd.Index([str(s) for s in samples[id_column]], name="index")

        var = pd.DataFrame(index=pd.Index(bundle.gene_ids, name="gene_id"))

        adata = ad.AnnData(
            X=bundle.counts.T.to_numpy(dtype=np.float64),
            obs=obs,
            var=var,
            layers={
                "abundance": bundle.abundance.T.to_numpy(dtype=np.float64),
                "length": bundle.length.T.to_numpy(dtype=np.float64),
            },
        )
        adata.uns["bundle"] = {
            "counts_from_abundance": bundle.counts_from_abundance,
            "n_dropped_transcripts": int(bundle.n_dropped_transcripts),
            "source_files": {k: str(v) for k, v in bundle.source_files.items()},
        }
        tx_table = _to_writable(transcript_metadata.reset_index(drop=True))
        tx_table.index = tx_table.index.astype(str)
        adata.uns["transcript_metadata"] = tx_table
        return adata

    def load(
        self, path: Union[str, Path]
    ) -> Tuple[QuantificationBundle, pd.DataFrame, pd.DataFrame]:
        """
        Read an archive written by ``export``.

        Returns:
            Tuple of (bundle, samples, transcript_metadata)
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Archive not found: {path}")

        adata = ad.read_h5ad(path)
        sample_ids = list(adata.obs_names)
        gene_ids = pd.Index(list(adata.var_names), name="gene_id")

        def matrix(values) -> pd.DataFrame:
            return pd.DataFrame(np.asarray(values).T, index=gene_ids, columns=sample_ids)

        attrs = dict(adata.uns.get("bundle", {}))
        bundle = QuantificationBundle(
            counts=matrix(adata.X),
            abundance=matrix(adata.layers["abundance"]),
            length=matrix(adata.layers["length"]),
            counts_from_abundance=str(attrs.get("counts_from_abundance", "no")),
            n_dropped_transcripts=int(attrs.get("n_dropped_transcripts", 0)),
            source_files={
                k: Path(v) for k, v in dict(attrs.get("source_files", {})).items()
            },
        )

        samples = _from_writable(adata.obs).reset_index(drop=True)
        transcript_metadata = _from_writable(
            pd.DataFrame(adata.uns["transcript_metadata"])
        ).reset_index(drop=True)

        logger.info(f"Loaded archive {path}: {adata.n_obs} samples x {adata.n_vars} genes")
        return bundle, samples, transcript_metadata
