"""
Unit tests for the link abstraction used by CQI selection.

Tests:
- CQI tables and spectral efficiency lookup
- Layer to codeword mapping
- SINR thresholds per table
- EESM effective SINR and logistic BLER
"""

import pytest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.config import CQITableName
from nr_csi.link_abstraction import (
    BLER_TARGETS,
    EESMBLERMapper,
    TABLE1_SINR_THRESHOLDS_DB,
    codeword_layers,
    codeword_sinr,
    cqi_table,
    num_codewords,
    sinr_thresholds_db,
    spectral_efficiency,
)


class TestCQITables:
    """Test CQI table access."""

    @pytest.mark.parametrize("name", list(CQITableName))
    def test_table_shape(self, name):
        """Test 16 rows with CQI 0 out of range."""
        table = cqi_table(name)
        assert table.shape == (16, 4)
        np.testing.assert_array_equal(table[:, 0], np.arange(16))
        assert np.all(np.isnan(table[0, 1:]))

    @pytest.mark.parametrize("name", list(CQITableName))
    def test_efficiency_increasing(self, name):
        """Test spectral efficiency grows with the CQI index."""
        assert np.all(np.diff(cqi_table(name)[1:, 3]) > 0)

    def test_lookup_by_value(self):
        """Test table lookup by its string value."""
        assert cqi_table("table2")[15, 1] == 8

    def test_spectral_efficiency(self):
        """Test CQI 0 and NaN have no efficiency."""
        eff = spectral_efficiency(CQITableName.TABLE1, [0, 8, np.nan, 15])
        assert np.isnan(eff[0]) and np.isnan(eff[2])
        np.testing.assert_allclose(eff[[1, 3]], [1.9141, 5.5547])

    def test_bler_targets(self):
        """Test per-table BLER targets."""
        assert BLER_TARGETS[CQITableName.TABLE1] == 0.1
        assert BLER_TARGETS[CQITableName.TABLE3] == 1e-5


class TestLayerMapping:
    """Test layer to codeword mapping."""

    @pytest.mark.parametrize("num_layers,expected", [(1, 1), (4, 1), (5, 2), (8, 2)])
    def test_num_codewords(self, num_layers, expected):
        """Test one codeword up to 4 layers."""
        assert num_codewords(num_layers) == expected

    def test_five_layers_split(self):
        """Test 5 layers split as 2 + 3."""
        first, second = codeword_layers(5)
        np.testing.assert_array_equal(first, [0, 1])
        np.testing.assert_array_equal(second, [2, 3, 4])

    def test_codeword_sinr(self):
        """Test codeword SINR sums its layers."""
        np.testing.assert_allclose(codeword_sinr(np.array([[1.0, 2, 3, 4, 5]])), [[3.0, 12.0]])

    def test_codeword_sinr_nan(self):
        """Test a NaN layer makes its codeword NaN."""
        assert np.isnan(codeword_sinr(np.array([1.0, np.nan]))[0])


class TestThresholds:
    """Test AWGN SINR thresholds."""

    def test_table1_exact(self):
        """Test table 1 uses its calibration points."""
        np.testing.assert_allclose(sinr_thresholds_db(CQITableName.TABLE1), TABLE1_SINR_THRESHOLDS_DB)

    @pytest.mark.parametrize("name", list(CQITableName))
    def test_monotonic(self, name):
        """Test thresholds grow with the CQI index."""
        assert np.all(np.diff(sinr_thresholds_db(name)) > 0)

    def test_shared_entries(self):
        """Test equal efficiencies share a threshold across tables."""
        table2 = sinr_thresholds_db(CQITableName.TABLE2)
        assert table2[3] == pytest.approx(TABLE1_SINR_THRESHOLDS_DB[6])

    def test_table2_extends_above_table1(self):
        """Test 256QAM entries lie above the table 1 range."""
        assert sinr_thresholds_db(CQITableName.TABLE2)[-1] > TABLE1_SINR_THRESHOLDS_DB[-1]

    def test_table3_extends_below_table1(self):
        """Test low-efficiency entries lie below the table 1 range."""
        assert sinr_thresholds_db(CQITableName.TABLE3)[0] < TABLE1_SINR_THRESHOLDS_DB[0]


class TestEESMBLERMapper:
    """Test the EESM mapper."""

    @pytest.fixture
    def mapper(self):
        """Default mapper."""
        return EESMBLERMapper()

    def test_constant_sinr_effective(self, mapper):
        """Test constant samples map to themselves."""
        assert mapper.effective_sinr(np.full(20, 7.5), 6.5) == pytest.approx(7.5)

    def test_effective_below_mean(self, mapper):
        """Test spread samples give an effective SINR between min and mean."""
        samples = np.array([1.0, 10.0, 100.0])
        eff = mapper.effective_sinr(samples, 6.5)
        assert samples.min() <= eff < samples.mean()

    def test_bler_at_threshold(self, mapper):
        """Test the BLER curve passes 0.1 at the threshold."""
        assert mapper.bler(12.3, 12.3) == pytest.approx(0.1)

    def test_bler_decreasing(self, mapper):
        """Test BLER falls as SINR rises."""
        assert mapper.bler(5.0, 8.0) > mapper.bler(8.0, 8.0) > mapper.bler(11.0, 8.0)

    @pytest.mark.parametrize("sinr_db,expected", [(10.0, 8), (20.0, 13)])
    def test_flat_sinr(self, mapper, sinr_db, expected):
        """Test flat SINR selects the highest CQI under 10% BLER."""
        cqi, eff_db, bler = mapper.map_codeword(np.full(12, 10 ** (sinr_db / 10)), CQITableName.TABLE1)
        assert cqi == expected
        assert eff_db == pytest.approx(sinr_db)
        assert bler <= 0.1

    def test_low_sinr(self, mapper):
        """Test CQI 0 reports the figures of CQI 1."""
        cqi, eff_db, bler = mapper.map_codeword(np.full(4, 0.01), CQITableName.TABLE1)
        assert cqi == 0
        assert eff_db == pytest.approx(-20.0)
        assert bler > 0.1

    def test_all_nan(self, mapper):
        """Test no finite samples gives NaN."""
        assert all(np.isnan(v) for v in mapper.map_codeword(np.full(3, np.nan), CQITableName.TABLE1))

    def test_nan_samples_ignored(self, mapper):
        """Test NaN samples are dropped."""
        cqi, _, _ = mapper.map_codeword(np.array([10.0, np.nan, 10.0]), CQITableName.TABLE1)
        assert cqi == 8

    def test_table3_target(self, mapper):
        """Test the 1e-5 target of table 3."""
        cqi, _, bler = mapper.map_codeword(np.full(4, 100.0), CQITableName.TABLE3)
        assert cqi == 13
        assert bler <= 1e-5

    def test_two_codewords(self, mapper):
        """Test 5 layers yield two codeword results."""
        cqi, eff_db, bler = mapper(np.full((10, 5), 10.0), CQITableName.TABLE1)
        assert cqi.shape == (2,)
        np.testing.assert_array_equal(cqi, [8, 8])

    def test_one_dimensional_input(self, mapper):
        """Test a single-layer vector input."""
        cqi, _, _ = mapper(np.full(6, 100.0), CQITableName.TABLE1)
        np.testing.assert_array_equal(cqi, [13])
