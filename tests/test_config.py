"""
Unit tests for CSI report configuration.

Tests:
- Carrier and BWP dimensions
- Codebook variant validation against the port count
- Subband size and PRG constraints
- Layer and rank restriction bounds
- Dict round trip used by the REST layer
"""

import pytest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from nr_csi.config import (
    CarrierConfig,
    CSIReportConfig,
    CSIConfigurationError,
    CodebookType,
    CQITableName,
    ReportingMode,
    TypeISinglePanelConfig,
    TypeIMultiPanelConfig,
    TypeIIConfig,
    EnhancedTypeIIConfig,
    valid_subband_sizes,
)


class TestCarrierConfig:
    """Test carrier configuration."""

    def test_defaults(self):
        """Test default carrier is 52 RBs with normal CP."""
        carrier = CarrierConfig()
        assert carrier.n_size_grid == 52
        assert carrier.symbols_per_slot == 14
        assert carrier.num_subcarriers == 624

    def test_from_dict(self):
        """Test building from a partial dict."""
        carrier = CarrierConfig.from_dict({"n_size_grid": 24})
        assert carrier.n_size_grid == 24
        assert carrier.n_start_grid == 0


class TestSubbandSizeTable:
    """Test the subband size table lookup."""

    @pytest.mark.parametrize("n_size_bwp,expected", [
        (20, ()),
        (24, (4, 8)),
        (72, (4, 8)),
        (73, (8, 16)),
        (144, (8, 16)),
        (275, (16, 32)),
    ])
    def test_valid_subband_sizes(self, n_size_bwp, expected):
        """Test allowed sizes per BWP range."""
        assert valid_subband_sizes(n_size_bwp) == expected


class TestReportConfigValidation:
    """Test CSIReportConfig.validate."""

    def test_default_config_is_valid(self):
        """Test default configuration validates with 4 ports."""
        config = CSIReportConfig()
        assert config.validate(CarrierConfig(), num_ports=4, num_layers=1, num_rx=2) is config

    def test_bwp_outside_carrier(self):
        """Test BWP larger than the carrier is rejected."""
        config = CSIReportConfig(n_size_bwp=30)
        with pytest.raises(CSIConfigurationError):
            config.validate(CarrierConfig(n_size_grid=24))

    def test_bwp_below_carrier_start(self):
        """Test BWP starting before the carrier is rejected."""
        config = CSIReportConfig(n_size_bwp=10, n_start_bwp=0)
        with pytest.raises(CSIConfigurationError):
            config.validate(CarrierConfig(n_size_grid=24, n_start_grid=5))

    def test_subband_mode_requires_size(self):
        """Test subband reporting without a subband size."""
        config = CSIReportConfig(n_size_bwp=24, pmi_mode=ReportingMode.SUBBAND)
        with pytest.raises(CSIConfigurationError, match="subband_size"):
            config.validate()

    def test_subband_size_out_of_table(self):
        """Test subband size not allowed for the BWP."""
        config = CSIReportConfig(
            n_size_bwp=24, cqi_mode=ReportingMode.SUBBAND, subband_size=16
        )
        with pytest.raises(CSIConfigurationError):
            config.validate()

    def test_small_bwp_skips_subband_size(self):
        """Test BWPs under 24 RBs need no subband size."""
        config = CSIReportConfig(n_size_bwp=20, cqi_mode=ReportingMode.SUBBAND)
        config.validate(CarrierConfig(n_size_grid=20))

    def test_prg_size_type1_only(self):
        """Test PRG size is rejected for Type II."""
        config = CSIReportConfig(n_size_bwp=24, codebook=TypeIIConfig(), prg_size=2)
        with pytest.raises(CSIConfigurationError, match="prg_size"):
            config.validate()

    def test_prg_size_values(self):
        """Test PRG size must be 2 or 4."""
        config = CSIReportConfig(n_size_bwp=24, prg_size=3)
        with pytest.raises(CSIConfigurationError):
            config.validate()

    def test_prg_replaces_pmi_subband_size(self):
        """Test subband PMI with PRGs needs no subband size."""
        config = CSIReportConfig(
            n_size_bwp=24, pmi_mode=ReportingMode.SUBBAND, prg_size=4
        )
        config.validate()

    def test_layers_above_antennas(self):
        """Test layer count above min(ports, rx)."""
        config = CSIReportConfig()
        with pytest.raises(CSIConfigurationError, match="at most 2 layers"):
            config.validate(num_ports=2, num_layers=3, num_rx=4)

    def test_layers_above_family_cap(self):
        """Test Type II supports at most 2 layers."""
        config = CSIReportConfig(codebook=TypeIIConfig())
        with pytest.raises(CSIConfigurationError):
            config.validate(num_ports=4, num_layers=3)

    def test_rank_restriction_default(self):
        """Test rank restriction defaults to all ranks."""
        config = CSIReportConfig()
        np.testing.assert_array_equal(config.rank_restriction(), np.ones(8))

    def test_rank_restriction_wrong_length(self):
        """Test rank restriction must cover every rank of the family."""
        config = CSIReportConfig(ri_restriction=[1, 0])
        with pytest.raises(CSIConfigurationError):
            config.validate()

    def test_rank_restriction_non_binary(self):
        """Test rank restriction must be binary."""
        config = CSIReportConfig(ri_restriction=[1, 2, 0, 0, 0, 0, 0, 0])
        with pytest.raises(CSIConfigurationError, match="binary"):
            config.validate()


class TestCodebookVariants:
    """Test per-family codebook parameter validation."""

    def test_single_panel_port_mismatch(self):
        """Test panel (2, 1) does not fit 8 ports."""
        with pytest.raises(CSIConfigurationError):
            TypeISinglePanelConfig(panel_dimensions=(2, 1)).validate(num_ports=8)

    def test_single_panel_small_port_counts(self):
        """Test 1 and 2 ports skip panel validation."""
        config = TypeISinglePanelConfig(panel_dimensions=(4, 2))
        config.validate(num_ports=1)
        config.validate(num_ports=2)
        assert config.subset_restriction(2).size == 6

    def test_single_panel_mode(self):
        """Test codebook mode must be 1 or 2."""
        with pytest.raises(CSIConfigurationError):
            TypeISinglePanelConfig(codebook_mode=3).validate()

    def test_single_panel_restriction_length(self):
        """Test subset restriction length N1*O1*N2*O2."""
        config = TypeISinglePanelConfig(panel_dimensions=(2, 2))
        assert config.oversampling_factors == (4, 4)
        assert config.subset_restriction(8).size == 64

    def test_multi_panel_ports(self):
        """Test multi-panel needs matching port counts."""
        config = TypeIMultiPanelConfig(panel_dimensions=(2, 2, 1))
        config.validate(num_ports=8)
        with pytest.raises(CSIConfigurationError):
            config.validate(num_ports=16)

    def test_multi_panel_mode2_two_panels(self):
        """Test codebook mode 2 requires two panels."""
        with pytest.raises(CSIConfigurationError, match="Ng = 2"):
            TypeIMultiPanelConfig(panel_dimensions=(4, 2, 1), codebook_mode=2).validate()

    def test_type2_needs_four_ports(self):
        """Test Type II rejects 2 ports."""
        with pytest.raises(CSIConfigurationError):
            TypeIIConfig(panel_dimensions=(2, 1)).validate(num_ports=2)

    def test_type2_beams_with_four_ports(self):
        """Test L must be 2 with 4 ports."""
        with pytest.raises(CSIConfigurationError):
            TypeIIConfig(panel_dimensions=(2, 1), number_of_beams=3).validate(num_ports=4)

    def test_type2_restriction_length(self):
        """Test Type II restriction carries the 11-bit group field for 2D panels."""
        assert TypeIIConfig(panel_dimensions=(2, 2)).subset_restriction().size == 43
        assert TypeIIConfig(panel_dimensions=(4, 1)).subset_restriction().size == 32

    def test_etype2_parameters(self):
        """Test (L, pv, beta) lookup by rank."""
        config = EnhancedTypeIIConfig(parameter_combination=5)
        assert config.parameters(1) == (4, 0.25, 0.75)
        assert config.parameters(3) == (4, 0.25, 0.75)
        config = EnhancedTypeIIConfig(parameter_combination=6)
        assert config.parameters(2)[1] == 0.5
        assert config.parameters(4)[1] == 0.25

    def test_etype2_combination_with_four_ports(self):
        """Test combinations 3+ need more than 4 ports."""
        with pytest.raises(CSIConfigurationError):
            EnhancedTypeIIConfig(parameter_combination=3).validate(num_ports=4)

    def test_etype2_high_combination_needs_32_ports(self):
        """Test combinations 7 and 8 need 32 ports."""
        config = EnhancedTypeIIConfig(panel_dimensions=(4, 2), parameter_combination=7)
        with pytest.raises(CSIConfigurationError):
            config.validate(num_ports=16)

    def test_etype2_high_combination_rank(self):
        """Test combinations 7 and 8 support at most 2 layers."""
        config = CSIReportConfig(
            codebook=EnhancedTypeIIConfig(panel_dimensions=(4, 4), parameter_combination=7)
        )
        config.validate(num_ports=32, num_layers=2, num_rx=4)
        with pytest.raises(CSIConfigurationError):
            config.validate(num_ports=32, num_layers=3, num_rx=4)


class TestSerialization:
    """Test dict conversion."""

    def test_round_trip(self):
        """Test to_dict then from_dict keeps every field."""
        config = CSIReportConfig(
            n_size_bwp=48,
            n_start_bwp=2,
            codebook=TypeIIConfig(panel_dimensions=(2, 2), number_of_beams=3,
                                  phase_alphabet_size=8, subband_amplitude=True),
            pmi_mode=ReportingMode.SUBBAND,
            cqi_mode=ReportingMode.SUBBAND,
            subband_size=8,
            cqi_table=CQITableName.TABLE2,
        )
        restored = CSIReportConfig.from_dict(config.to_dict())
        assert restored == config

    def test_from_dict_default_family(self):
        """Test Type I single-panel is the default family."""
        config = CSIReportConfig.from_dict({})
        assert config.codebook_type == CodebookType.TYPE_I_SINGLE_PANEL

    def test_from_dict_family_selection(self):
        """Test the codebook_type key selects the variant."""
        config = CSIReportConfig.from_dict({
            "codebook": {"codebook_type": "etype2", "parameter_combination": 2},
        })
        assert isinstance(config.codebook, EnhancedTypeIIConfig)
        assert config.codebook.parameter_combination == 2

    def test_from_dict_unknown_family(self):
        """Test unknown codebook types are rejected."""
        with pytest.raises(CSIConfigurationError):
            CSIReportConfig.from_dict({"codebook": {"codebook_type": "type3"}})

    def test_from_dict_field_of_other_family(self):
        """Test fields of another variant are rejected."""
        with pytest.raises(CSIConfigurationError):
            CSIReportConfig.from_dict({
                "codebook": {"codebook_type": "type1_single_panel", "number_of_beams": 2},
            })
