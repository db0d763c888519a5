"""
Unit tests for the metadata loader service.
"""

import logging
from unittest.mock import MagicMock

import pandas as pd
import pytest

from dgeprep.core.exceptions import MissingFieldError
from dgeprep.services.metadata.metadata_loader_service import MetadataLoaderService
from dgeprep.tools.providers.sra_provider import SRAProvider, SRAProviderConfig


# ===============================================================================
# Fixtures
# ===============================================================================


@pytest.fixture
def mock_provider():
    provider = MagicMock(spec=SRAProvider)
    provider.config = SRAProviderConfig(email="", api_key=None)
    provider.get_project_metadata.return_value = pd.DataFrame(
        {
            "uid": ["101", "102"],
            "run_accession": ["SRR1", "SRR2"],
            "experiment_accession": ["SRX1", "SRX2"],
            "sample_accession": ["SRS1", "SRS2"],
        }
    )
    return provider


@pytest.fixture
def loader(mock_provider):
    return MetadataLoaderService(provider=mock_provider)


# ===============================================================================
# Local files
# ===============================================================================


@pytest.mark.unit
class TestLoadLocal:
    """Test reading local tab-delimited metadata."""

    def test_reads_header_and_rows(self, metadata_tsv):
        df = MetadataLoaderService().load_local(metadata_tsv)

        assert list(df.columns) == [
            "sample_id",
            "disease_status",
            "age",
            "tumor_type",
            "consent_withdrawn",
            "file_path",
        ]
        assert len(df) == 5

    def test_empty_and_na_tokens_are_missing(self, metadata_tsv):
        df = MetadataLoaderService().load_local(metadata_tsv)

        assert pd.isna(df.loc[2, "age"])
        assert pd.isna(df.loc[0, "consent_withdrawn"])
        assert df.loc[3, "consent_withdrawn"] == "yes"

    def test_values_are_read_as_strings(self, metadata_tsv):
        df = MetadataLoaderService().load_local(metadata_tsv)

        assert df.loc[0, "age"] == "34"

    def test_identifier_column_moved_first(self, temp_workspace):
        path = temp_workspace / "meta.tsv"
        path.write_text("condition\trun\nctrl\tSRR1\ntreat\tSRR2\n")

        df = MetadataLoaderService().load_local(path, id_column="run")

        assert list(df.columns) == ["run", "condition"]

    def test_missing_identifier_column_raises(self, metadata_tsv):
        with pytest.raises(MissingFieldError) as exc_info:
            MetadataLoaderService().load_local(metadata_tsv, id_column="run_accession")

        assert exc_info.value.details["missing_fields"] == ["run_accession"]

    def test_missing_identifier_value_raises(self, temp_workspace):
        path = temp_workspace / "meta.tsv"
        path.write_text("sample_id\tcondition\nS1\tctrl\nNA\ttreat\n")

        with pytest.raises(MissingFieldError):
            MetadataLoaderService().load_local(path)

    def test_missing_file_raises(self, temp_workspace):
        with pytest.raises(FileNotFoundError):
            MetadataLoaderService().load_local(temp_workspace / "absent.tsv")


# ===============================================================================
# Remote
# ===============================================================================


@pytest.mark.unit
class TestLoadRemote:
    """Test remote loading through the SRA provider."""

    def test_keyed_by_run_accession(self, loader, mock_provider):
        df = loader.load_remote("SRP100000")

        mock_provider.get_project_metadata.assert_called_once_with("SRP100000")
        assert df.columns[0] == "run_accession"
        assert list(df["run_accession"]) == ["SRR1", "SRR2"]

    def test_provider_created_lazily(self):
        loader = MetadataLoaderService()
        assert loader._provider is None
        assert isinstance(loader.provider, SRAProvider)


# ===============================================================================
# Merging sources
# ===============================================================================


@pytest.mark.unit
class TestMergeSources:
    """Test joining remote and local metadata."""

    @pytest.fixture
    def remote(self, loader):
        return loader.load_remote("SRP100000")

    @pytest.fixture
    def local(self):
        return pd.DataFrame({"sample_id": ["SRR2", "SRR3"], "condition": ["treat", "ctrl"]})

    def test_inner_join_keeps_shared_ids(self, loader, remote, local):
        merged = loader.merge_sources(remote, local, "run_accession", "sample_id")

        assert list(merged["sample_id"]) == ["SRR2"]
        assert merged.loc[0, "experiment_accession"] == "SRX2"
        assert merged.columns[0] == "sample_id"

    def test_outer_join_fills_identifier(self, loader, remote, local):
        merged = loader.merge_sources(remote, local, "run_accession", "sample_id", how="outer")

        assert set(merged["sample_id"]) == {"SRR1", "SRR2", "SRR3"}

    def test_one_sided_ids_are_logged_not_raised(
        self, loader, remote, local, caplog, monkeypatch
    ):
        logger = logging.getLogger("dgeprep.services.metadata.metadata_loader_service")
        monkeypatch.setattr(logger, "propagate", True)
        with caplog.at_level(logging.INFO, logger=logger.name):
            loader.merge_sources(remote, local, "run_accession", "sample_id")

        assert "present only in remote metadata" in caplog.text
        assert "present only in local metadata" in caplog.text

    def test_missing_join_key_raises(self, loader, remote, local):
        with pytest.raises(MissingFieldError):
            loader.merge_sources(remote, local, "run_accession", "subject")
