"""
Unit tests for the bundle export service.
"""

from datetime import date

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from dgeprep.core.exceptions import ConsistencyError
from dgeprep.services.analysis.quantification_service import QuantificationService
from dgeprep.services.data_management.bundle_export_service import (
    BundleExportService,
    archive_name,
)

CREATED = date(2024, 3, 15)


@pytest.fixture
def bundle(salmon_root, tx2gene):
    service = QuantificationService()
    return service.summarize_to_gene(service.discover_files(salmon_root), tx2gene)


@pytest.fixture
def samples():
    return pd.DataFrame(
        {
            "sample_id": ["S1", "S2", "S3"],
            "age": ["34", None, "61"],
            "tumor_type": ["Astrocytoma", "Glioma", "Meningioma"],
            "group": ["AST", "GLI", "other"],
        }
    )


@pytest.fixture
def exporter():
    return BundleExportService()


@pytest.mark.unit
class TestExport:
    """Test writing the archive."""

    def test_file_name_embeds_date(self, exporter, bundle, samples, transcript_metadata, temp_workspace):
        path = exporter.export(
            bundle, samples, transcript_metadata, temp_workspace / "exports", created=CREATED
        )

        assert path.name == "dds_input_2024-03-15.h5ad"
        assert archive_name("study", CREATED) == "study_2024-03-15.h5ad"
        assert not list((temp_workspace / "exports").glob(".*.tmp.h5ad"))

    def test_archive_layout(self, exporter, bundle, samples, transcript_metadata, temp_workspace):
        path = exporter.export(bundle, samples, transcript_metadata, temp_workspace, created=CREATED)

        adata = ad.read_h5ad(path)

        assert adata.shape == (3, 3)
        assert list(adata.obs_names) == ["S1", "S2", "S3"]
        assert list(adata.var_names) == ["G1", "G2", "G3"]
        assert set(adata.layers.keys()) == {"abundance", "length"}
        np.testing.assert_allclose(adata.X, bundle.counts.T.to_numpy())
        assert "transcript_metadata" in adata.uns

    def test_existing_archive_is_not_replaced(
        self, exporter, bundle, samples, transcript_metadata, temp_workspace
    ):
        exporter.export(bundle, samples, transcript_metadata, temp_workspace, created=CREATED)

        with pytest.raises(FileExistsError):
            exporter.export(bundle, samples, transcript_metadata, temp_workspace, created=CREATED)

        path = exporter.export(
            bundle, samples, transcript_metadata, temp_workspace, created=CREATED, overwrite=True
        )
        assert path.exists()

    def test_inconsistent_inputs_are_refused(
        self, exporter, bundle, samples, transcript_metadata, temp_workspace
    ):
        reordered = samples.iloc[[1, 0, 2]].reset_index(drop=True)

        with pytest.raises(ConsistencyError) as exc_info:
            exporter.export(bundle, reordered, transcript_metadata, temp_workspace, created=CREATED)

        assert exc_info.value.details["mismatch_positions"] == [0, 1]
        assert not list(temp_workspace.glob("*.h5ad"))


@pytest.mark.unit
class TestLoad:
    """Test reading the archive back."""

    def test_round_trip(self, exporter, bundle, samples, transcript_metadata, temp_workspace):
        path = exporter.export(bundle, samples, transcript_metadata, temp_workspace, created=CREATED)

        loaded, loaded_samples, loaded_metadata = exporter.load(path)

        pd.testing.assert_frame_equal(loaded.counts, bundle.counts, check_names=False)
        pd.testing.assert_frame_equal(loaded.length, bundle.length, check_names=False)
        assert loaded.sample_ids == ["S1", "S2", "S3"]
        assert loaded.source_files["S1"] == bundle.source_files["S1"]
        assert list(loaded_samples["sample_id"]) == ["S1", "S2", "S3"]
        assert pd.isna(loaded_samples.loc[1, "age"])
        assert list(loaded_samples["group"]) == ["AST", "GLI", "other"]
        assert list(loaded_metadata["transcript_id"]) == ["T1", "T2", "T3", "T4"]
        assert pd.isna(loaded_metadata.loc[3, "gene_name"])

    def test_missing_archive_raises(self, exporter, temp_workspace):
        with pytest.raises(FileNotFoundError):
            exporter.load(temp_workspace / "absent.h5ad")
