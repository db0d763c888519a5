"""
Unit tests for the consistency service.
"""

import logging

import pandas as pd
import pytest

from dgeprep.services.analysis.quantification_service import QuantificationBundle
from dgeprep.services.quality.consistency_service import (
    ConsistencyReport,
    ConsistencyService,
)


@pytest.fixture
def checker():
    return ConsistencyService()


def _bundle(sample_ids):
    frame = pd.DataFrame(1.0, index=["G1", "G2"], columns=list(sample_ids))
    return QuantificationBundle(counts=frame, abundance=frame.copy(), length=frame.copy())


@pytest.mark.unit
class TestConsistencyCheck:
    """Test positional comparison of sample identifiers."""

    def test_identical_order_passes(self, checker):
        report = checker.check(["A", "B", "C"], ["A", "B", "C"])

        assert report.passed
        assert report.mismatch_positions == []
        assert report.summary() == "Consistent: 3 samples in matching order"

    def test_swapped_positions_are_reported(self, checker):
        report = checker.check(["A", "B", "C"], ["A", "C", "B"])

        assert not report.passed
        assert report.mismatch_positions == [1, 2]
        assert report.mismatches == [(1, "B", "C"), (2, "C", "B")]

    def test_length_mismatch_reports_tail(self, checker):
        report = checker.check(["A", "B", "C"], ["A", "B"])

        assert not report.passed
        assert not report.counts_match
        assert report.mismatch_positions == [2]
        assert report.mismatches == [(2, "C", None)]
        assert "sample count differs" in report.summary()

    def test_accepts_table_and_bundle(self, checker):
        samples = pd.DataFrame({"run": ["SRR1", "SRR2"], "group": ["AST", "GLI"]})

        report = checker.check(samples, _bundle(["SRR1", "SRR2"]), id_column="run")

        assert report.passed
        assert report.n_metadata == report.n_bundle == 2

    def test_accepts_matrix(self, checker):
        matrix = pd.DataFrame(0.0, index=["G1"], columns=["S2", "S1"])

        report = checker.check(["S1", "S2"], matrix)

        assert report.mismatch_positions == [0, 1]

    def test_empty_sequences_pass(self, checker):
        assert checker.check([], []).passed

    def test_does_not_raise_and_warns(self, checker, caplog, monkeypatch):
        logger = logging.getLogger("dgeprep.services.quality.consistency_service")
        monkeypatch.setattr(logger, "propagate", True)

        with caplog.at_level(logging.WARNING, logger=logger.name):
            report = checker.check(["A"], ["B"])

        assert not report.passed
        assert "Inconsistent" in caplog.text

    def test_to_dict(self, checker):
        data = checker.check(["A", "B"], ["B", "A"]).to_dict()

        assert data == {
            "passed": False,
            "n_metadata": 2,
            "n_bundle": 2,
            "mismatch_positions": [0, 1],
            "mismatches": [[0, "A", "B"], [1, "B", "A"]],
        }

    def test_report_is_a_plain_dataclass(self):
        report = ConsistencyReport(passed=True, n_metadata=0, n_bundle=0)
        assert report.mismatches == []
