"""
Unit tests for CQI selection.

Tests:
- Differential subband CQI mapping
- SINR table lookup
- Per-RB SINR diagnostic
- Wideband and subband CQI with the table and the EESM mapper
- No-report outcomes
- PRG-based reporting
"""

import pytest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.config import CQITableName, CSIReportConfig, ReportingMode
from nr_csi.cqi_selector import (
    CQIInfo,
    CQISelector,
    differential_cqi,
    sinr_per_rb,
    table_cqi,
)
from nr_csi.link_abstraction import TABLE1_SINR_THRESHOLDS_DB


# Thresholds spaced 1 dB apart, CQI 1 at -0.5 dB
UNIT_TABLE = np.arange(15) - 0.5


class TestDifferentialCQI:
    """Test Table 5.2.2.1-1 mapping."""

    def test_mapping(self):
        """Test offsets 0, 1, >= 2, <= -1 and NaN."""
        codes = differential_cqi(np.array([7, 8, 10, 5, np.nan]), 7)
        np.testing.assert_array_equal(codes[:4], [0, 1, 2, 3])
        assert np.isnan(codes[4])

    def test_per_codeword(self):
        """Test differential values per codeword column."""
        codes = differential_cqi(np.array([[9, 4], [8, 6]]), np.array([8, 5]))
        np.testing.assert_array_equal(codes, [[1, 3], [0, 1]])


class TestTableCQI:
    """Test SINR threshold lookup."""

    def test_table1_thresholds(self):
        """Test CQI from the table 1 thresholds."""
        cqi = table_cqi(np.array([10.0, np.nan, 0.01]), TABLE1_SINR_THRESHOLDS_DB)
        assert cqi[0] == 8
        assert np.isnan(cqi[1])
        assert cqi[2] == 0

    def test_top_of_table(self):
        """Test SINR above every threshold gives CQI 15."""
        assert table_cqi(np.array([1e4]), UNIT_TABLE)[0] == 15

    def test_zero_sinr(self):
        """Test zero linear SINR gives CQI 0."""
        assert table_cqi(np.array([0.0]), UNIT_TABLE)[0] == 0


class TestSINRPerRB:
    """Test the per-RB diagnostic."""

    def test_mean_per_rb_and_symbol(self):
        """Test averaging and NaN for RBs without CSI-RS."""
        out = sinr_per_rb(
            np.array([[1.0], [3.0], [5.0]]), np.array([0, 5, 12]), np.array([5, 5, 5]), 2, 14
        )
        assert out.shape == (2, 14, 1)
        assert out[0, 5, 0] == 2.0
        assert out[1, 5, 0] == 5.0
        assert np.isnan(out[0, 4, 0])

    def test_empty(self):
        """Test no REs gives all NaN."""
        out = sinr_per_rb(np.zeros((0, 2)), np.zeros(0, dtype=int), np.zeros(0, dtype=int), 3, 14)
        assert out.shape == (3, 14, 1)
        assert np.all(np.isnan(out))


class TestCQISelector:
    """Test CQI selection."""

    def test_wideband_mapper(self, carrier, wideband_config, channel_generator, csirs):
        """Test 10 dB flat SINR gives CQI 8."""
        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        cqi, pmi, info, pmi_info = CQISelector(wideband_config, carrier).select(H, *csirs, 1, 0.1)
        np.testing.assert_array_equal(cqi, [[8]])
        assert pmi.is_valid
        assert info.transport_bler[0, 0] <= 0.1
        np.testing.assert_allclose(info.sinr_per_subband_per_cw, [[10.0]], rtol=1e-6)
        assert info.sinr_per_rb_per_cw.shape == (24, 14, 1)
        np.testing.assert_allclose(info.sinr_per_rb_per_cw[:, 5, 0], 10.0)

    def test_higher_snr(self, carrier, wideband_config, channel_generator, csirs):
        """Test 20 dB flat SINR gives CQI 13."""
        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        cqi, _, _, _ = CQISelector(wideband_config, carrier).select(H, *csirs, 1, 0.01)
        np.testing.assert_array_equal(cqi, [[13]])

    def test_table_mode(self, carrier, wideband_config, channel_generator, csirs):
        """Test the SINR table replaces the mapper."""
        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        selector = CQISelector(wideband_config, carrier, sinr_table=UNIT_TABLE)
        cqi, _, info, _ = selector.select(H, *csirs, 1, 0.1)
        np.testing.assert_array_equal(cqi, [[11]])
        np.testing.assert_array_equal(info.transport_bler, [[0]])

    def test_table_size(self, wideband_config):
        """Test the SINR table must hold 15 entries."""
        with pytest.raises(ValueError):
            CQISelector(wideband_config, sinr_table=[0.0] * 14)

    def test_custom_mapper(self, carrier, wideband_config, channel_generator, csirs):
        """Test an injected BLER mapper is used."""
        calls = []

        def mapper(sinr, table):
            calls.append(table)
            return np.array([5.0]), np.array([3.0]), np.array([0.05])

        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        selector = CQISelector(wideband_config, carrier, bler_mapper=mapper)
        cqi, _, info, _ = selector.select(H, *csirs, 1, 0.1)
        np.testing.assert_array_equal(cqi, [[5]])
        assert calls == [CQITableName.TABLE1]
        np.testing.assert_allclose(info.sinr_per_subband_per_cw, [[10 ** 0.3]])

    def test_subband_flat(self, carrier, subband_config, channel_generator, csirs):
        """Test subband rows are differential against the wideband CQI."""
        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        cqi, _, info, _ = CQISelector(subband_config, carrier).select(H, *csirs, 1, 0.1)
        np.testing.assert_array_equal(cqi, [[8], [0], [0], [0]])
        np.testing.assert_array_equal(info.subband_cqi, [[8], [8], [8], [8]])

    def test_subband_table_mode(self, carrier, subband_config, channel_generator, csirs):
        """Test subband reporting with the SINR table."""
        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        selector = CQISelector(subband_config, carrier, sinr_table=UNIT_TABLE)
        cqi, _, _, _ = selector.select(H, *csirs, 1, 0.1)
        np.testing.assert_array_equal(cqi, [[11], [0], [0], [0]])

    def test_subband_without_csirs(self, carrier, subband_config, channel_generator, csirs_factory):
        """Test a CQI subband without CSI-RS reports NaN."""
        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        k, l = csirs_factory(n_rb=16)
        cqi, _, _, _ = CQISelector(subband_config, carrier).select(H, k, l, 1, 0.1)
        np.testing.assert_array_equal(cqi[:3], [[8], [0], [0]])
        assert np.isnan(cqi[3, 0])

    def test_two_layers(self, carrier, wideband_config, channel_generator, csirs):
        """Test two equal layers share one codeword."""
        H = channel_generator.flat(2, 2, matrix=np.eye(2))
        cqi, pmi, info, pmi_info = CQISelector(wideband_config, carrier).select(H, *csirs, 2, 0.05)
        assert cqi.shape == (1, 1)
        assert cqi[0, 0] == 8
        np.testing.assert_allclose(pmi_info.sinr_per_subband, [[10.0, 10.0]], rtol=1e-6)

    def test_deterministic_random_channel(self, carrier, subband_config, channel_generator, dense_csirs):
        """Test repeated selection on a selective channel."""
        H = channel_generator.frequency_selective(2, 4, seed=3)
        selector = CQISelector(subband_config, carrier)
        first = selector.select(H, *dense_csirs, 1, 0.05)[0]
        second = selector.select(H, *dense_csirs, 1, 0.05)[0]
        np.testing.assert_array_equal(first, second)
        assert first.shape == (4, 1)
        assert np.all((first[1:] >= 0) & (first[1:] <= 3))


class TestNoReport:
    """Test NaN CQI outcomes."""

    def test_zero_noise(self, carrier, wideband_config, channel_generator, csirs):
        """Test zero noise variance reports no CQI."""
        cqi, _, info, _ = CQISelector(wideband_config, carrier).select(
            channel_generator.flat(1, 1), *csirs, 1, 0.0
        )
        assert cqi.shape == (1, 1)
        assert np.all(np.isnan(cqi))
        assert np.all(np.isnan(info.sinr_per_rb_per_cw))

    def test_no_csirs_subband(self, carrier, subband_config, channel_generator, empty_csirs):
        """Test subband NaN shape is wideband row plus one per subband."""
        cqi, pmi, _, _ = CQISelector(subband_config, carrier).select(
            channel_generator.flat(2, 4), *empty_csirs, 1, 0.1
        )
        assert cqi.shape == (4, 1)
        assert np.all(np.isnan(cqi))
        assert not pmi.is_valid

    def test_restricted_codebook(self, carrier, channel_generator, csirs):
        """Test no PMI means no CQI."""
        from nr_csi.config import TypeISinglePanelConfig
        config = CSIReportConfig(
            n_size_bwp=24, codebook=TypeISinglePanelConfig(codebook_subset_restriction=[0] * 8)
        )
        cqi, _, _, _ = CQISelector(config, carrier).select(channel_generator.flat(2, 4), *csirs, 1, 0.1)
        assert np.all(np.isnan(cqi))

    def test_nan_result_codewords(self, wideband_config):
        """Test NaN matrix has one column per codeword."""
        cqi, info = CQISelector(wideband_config).nan_result(6)
        assert cqi.shape == (1, 2)
        assert info.sinr_per_rb_per_cw.shape == (24, 14, 2)


class TestPRGReporting:
    """Test PRG-based CQI."""

    @pytest.fixture
    def prg_config(self):
        """PRG size 2, wideband CQI."""
        return CSIReportConfig(n_size_bwp=24, prg_size=2)

    def test_single_port_matches_plain(self, carrier, prg_config, wideband_config,
                                        channel_generator, csirs):
        """Test a single-entry codebook gives the plain result."""
        H = channel_generator.flat(1, 1, matrix=[[1.0]])
        prg = CQISelector(prg_config, carrier).select(H, *csirs, 1, 0.1)[0]
        plain = CQISelector(wideband_config, carrier).select(H, *csirs, 1, 0.1)[0]
        np.testing.assert_array_equal(prg, plain)

    def test_seeded(self, carrier, prg_config, channel_generator, dense_csirs):
        """Test the same seed gives the same CQI."""
        H = channel_generator.frequency_selective(2, 4, seed=1)
        first = CQISelector(prg_config, carrier, prg_seed=7).select(H, *dense_csirs, 1, 0.05)[0]
        second = CQISelector(prg_config, carrier, prg_seed=7).select(H, *dense_csirs, 1, 0.05)[0]
        np.testing.assert_array_equal(first, second)

    def test_mapper_gets_reported_pmi_sinr(self, carrier, prg_config, channel_generator,
                                           dense_csirs):
        """Test the BLER mapper is fed the SINR of the reported PMI, not the random i2."""
        samples = []

        def mapper(sinr, table):
            samples.append(np.array(sinr))
            return np.array([7.0]), np.array([5.0]), np.array([0.01])

        H = channel_generator.frequency_selective(2, 4, seed=1)
        selector = CQISelector(prg_config, carrier, bler_mapper=mapper, prg_seed=3)
        cqi, _, _, pmi_info = selector.select(H, *dense_csirs, 1, 0.05)
        np.testing.assert_array_equal(cqi, [[7]])
        assert len(samples) == 1
        np.testing.assert_array_equal(samples[0], pmi_info.sinr_per_re_pmi)

    def test_subband(self, carrier, channel_generator, dense_csirs):
        """Test PRG reporting with subband CQI."""
        config = CSIReportConfig(
            n_size_bwp=24, prg_size=2, cqi_mode=ReportingMode.SUBBAND, subband_size=8
        )
        H = channel_generator.frequency_selective(2, 4, seed=2)
        cqi, pmi, info, _ = CQISelector(config, carrier).select(H, *dense_csirs, 1, 0.05)
        assert cqi.shape == (4, 1)
        assert pmi.i2.shape == (12,)
        assert np.all(np.isfinite(cqi))


class TestCQIInfo:
    """Test CQIInfo serialization."""

    def test_to_dict(self):
        """Test NaN becomes None."""
        info = CQIInfo(
            subband_cqi=np.array([[8.0], [np.nan]]),
            transport_bler=np.array([[0.05], [np.nan]]),
            sinr_per_subband_per_cw=np.array([[10.0], [np.nan]]),
            sinr_per_rb_per_cw=np.zeros((1, 14, 1)),
        )
        data = info.to_dict()
        assert data["subband_cqi"] == [[8.0], [None]]
        assert "sinr_per_rb_per_cw" not in data
