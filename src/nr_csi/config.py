"""
CSI Report Configuration for 5G NR Downlink CSI Feedback

Typed configuration records for RI/PMI/CQI reporting per 3GPP TS 38.214:
- Carrier and bandwidth part (BWP) dimensions
- Codebook family as a tagged union, each variant carrying only its own fields
- PMI/CQI reporting granularity and subband/PRG sizes
- Codebook subset, i2 and rank restrictions

Configurations are validated once, before any search begins. Invalid
combinations raise CSIConfigurationError.

References:
- 3GPP TS 38.214 Section 5.2.1.4: Reporting configurations
- 3GPP TS 38.214 Section 5.2.2.2: Precoding matrix indicator
- 3GPP TS 38.331: CSI-ReportConfig information element
"""

import math
import logging
from dataclasses import dataclass, field
from typing import ClassVar, Dict, Any, List, Optional, Tuple, Union
from enum import Enum

import numpy as np

logger = logging.getLogger(__name__)


class CSIConfigurationError(ValueError):
    """Raised for malformed or inconsistent CSI report configurations"""


class CodebookType(Enum):
    """Codebook families per 3GPP TS 38.214 Section 5.2.2.2"""
    TYPE_I_SINGLE_PANEL = "type1_single_panel"   # Table 5.2.2.2.1
    TYPE_I_MULTI_PANEL = "type1_multi_panel"     # Table 5.2.2.2.2
    TYPE_II = "type2"                            # Section 5.2.2.2.3
    ENHANCED_TYPE_II = "etype2"                  # Section 5.2.2.2.5


class ReportingMode(Enum):
    """PMI/CQI frequency granularity"""
    WIDEBAND = "wideband"
    SUBBAND = "subband"


class CQITableName(Enum):
    """CQI tables per TS 38.214 Tables 5.2.2.1-2 to 5.2.2.1-4"""
    TABLE1 = "table1"     # 4-bit, up to 64QAM
    TABLE2 = "table2"     # 4-bit, up to 256QAM
    TABLE3 = "table3"     # 4-bit, low spectral efficiency (URLLC)


# Supported (N1, N2) -> (O1, O2), TS 38.214 Table 5.2.2.2.1-2
SINGLE_PANEL_CONFIGS: Dict[Tuple[int, int], Tuple[int, int]] = {
    (2, 1): (4, 1),
    (2, 2): (4, 4),
    (4, 1): (4, 1),
    (3, 2): (4, 4),
    (6, 1): (4, 1),
    (4, 2): (4, 4),
    (8, 1): (4, 1),
    (4, 3): (4, 4),
    (6, 2): (4, 4),
    (12, 1): (4, 1),
    (4, 4): (4, 4),
    (8, 2): (4, 4),
    (16, 1): (4, 1),
}

# Supported (Ng, N1, N2) -> (O1, O2), TS 38.214 Table 5.2.2.2.2-1
MULTI_PANEL_CONFIGS: Dict[Tuple[int, int, int], Tuple[int, int]] = {
    (2, 2, 1): (4, 1),
    (2, 2, 2): (4, 4),
    (2, 4, 1): (4, 1),
    (4, 2, 1): (4, 1),
    (2, 8, 1): (4, 1),
    (2, 4, 2): (4, 4),
    (4, 4, 1): (4, 1),
    (4, 2, 2): (4, 4),
}

# Enhanced Type II parameter combinations, TS 38.214 Table 5.2.2.2.5-1
# combination -> (L, pv for 1-2 layers, pv for 3-4 layers, beta)
ENHANCED_TYPE_II_PARAMETERS: Dict[int, Tuple[int, float, float, float]] = {
    1: (2, 1 / 4, 1 / 8, 1 / 4),
    2: (2, 1 / 4, 1 / 8, 1 / 2),
    3: (4, 1 / 4, 1 / 8, 1 / 4),
    4: (4, 1 / 4, 1 / 8, 1 / 2),
    5: (4, 1 / 4, 1 / 4, 3 / 4),
    6: (4, 1 / 2, 1 / 4, 1 / 2),
    7: (6, 1 / 4, math.nan, 1 / 2),
    8: (6, 1 / 4, math.nan, 3 / 4),
}

# Subband sizes per BWP size range, TS 38.214 Table 5.2.1.4-2
SUBBAND_SIZE_TABLE: List[Tuple[int, int, Tuple[int, int]]] = [
    (24, 72, (4, 8)),
    (73, 144, (8, 16)),
    (145, 275, (16, 32)),
]


def valid_subband_sizes(n_size_bwp: int) -> Tuple[int, ...]:
    """Allowed subband sizes for a BWP, empty below 24 RBs"""
    for low, high, sizes in SUBBAND_SIZE_TABLE:
        if low <= n_size_bwp <= high:
            return sizes
    return ()


def _as_bits(name: str, bits: Optional[List[int]], length: int) -> np.ndarray:
    """Validate a binary restriction vector, defaulting to all ones"""
    if bits is None or len(bits) == 0:
        return np.ones(length, dtype=int)
    arr = np.asarray(bits, dtype=int).ravel()
    if arr.size != length:
        raise CSIConfigurationError(
            f"{name} must have {length} bits, got {arr.size}"
        )
    if np.any((arr != 0) & (arr != 1)):
        raise CSIConfigurationError(f"{name} must be binary")
    return arr


# =============================================================================
# Carrier
# =============================================================================

@dataclass
class CarrierConfig:
    """Carrier resource grid dimensions"""
    n_size_grid: int = 52                   # Carrier bandwidth in RBs
    n_start_grid: int = 0                   # Carrier start in CRBs
    symbols_per_slot: int = 14              # 14 normal CP, 12 extended CP

    @property
    def num_subcarriers(self) -> int:
        """Subcarriers spanned by the carrier grid"""
        return 12 * self.n_size_grid

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CarrierConfig":
        """Build carrier configuration from a plain dict"""
        return cls(
            n_size_grid=int(data.get("n_size_grid", 52)),
            n_start_grid=int(data.get("n_start_grid", 0)),
            symbols_per_slot=int(data.get("symbols_per_slot", 14)),
        )


# =============================================================================
# Codebook Family Variants
# =============================================================================

@dataclass
class TypeISinglePanelConfig:
    """Type I single-panel codebook parameters"""
    codebook_type: ClassVar[CodebookType] = CodebookType.TYPE_I_SINGLE_PANEL
    max_layers: ClassVar[int] = 8

    panel_dimensions: Tuple[int, int] = (2, 1)          # (N1, N2)
    codebook_mode: int = 1
    codebook_subset_restriction: Optional[List[int]] = None
    i2_restriction: Optional[List[int]] = None          # 16 bits

    @property
    def oversampling_factors(self) -> Tuple[int, int]:
        """(O1, O2) for the configured panel"""
        return SINGLE_PANEL_CONFIGS.get(tuple(self.panel_dimensions), (1, 1))

    def expected_ports(self) -> int:
        n1, n2 = self.panel_dimensions
        return 2 * n1 * n2

    def validate(self, num_ports: Optional[int] = None):
        if self.codebook_mode not in (1, 2):
            raise CSIConfigurationError(
                f"codebook_mode ({self.codebook_mode}) must be 1 or 2"
            )
        if num_ports is None:
            return
        if num_ports > 2:
            self._validate_panel(num_ports)
        self.subset_restriction(num_ports)
        self.i2_restriction_bits(num_ports)

    def _validate_panel(self, num_ports: int):
        panel = tuple(self.panel_dimensions)
        if len(panel) != 2:
            raise CSIConfigurationError(
                f"panel_dimensions must be (N1, N2), got {panel}"
            )
        if 2 * panel[0] * panel[1] != num_ports:
            raise CSIConfigurationError(
                f"Panel {panel} does not match {num_ports} CSI-RS ports "
                f"(2*N1*N2 must equal the port count)"
            )
        if panel not in SINGLE_PANEL_CONFIGS:
            raise CSIConfigurationError(
                f"Panel {panel} is not in TS 38.214 Table 5.2.2.2.1-2"
            )

    def subset_restriction(self, num_ports: Optional[int] = None) -> np.ndarray:
        """Codebook subset restriction bits for the given port count"""
        if num_ports == 1:
            return np.ones(1, dtype=int)
        if num_ports == 2:
            return _as_bits("codebook_subset_restriction",
                            self.codebook_subset_restriction, 6)
        n1, n2 = self.panel_dimensions
        o1, o2 = self.oversampling_factors
        return _as_bits("codebook_subset_restriction",
                        self.codebook_subset_restriction, n1 * o1 * n2 * o2)

    def i2_restriction_bits(self, num_ports: Optional[int] = None) -> np.ndarray:
        if num_ports is not None and num_ports <= 2:
            return np.ones(16, dtype=int)
        return _as_bits("i2_restriction", self.i2_restriction, 16)


@dataclass
class TypeIMultiPanelConfig:
    """Type I multi-panel codebook parameters"""
    codebook_type: ClassVar[CodebookType] = CodebookType.TYPE_I_MULTI_PANEL
    max_layers: ClassVar[int] = 4

    panel_dimensions: Tuple[int, int, int] = (2, 2, 1)  # (Ng, N1, N2)
    codebook_mode: int = 1
    codebook_subset_restriction: Optional[List[int]] = None

    @property
    def oversampling_factors(self) -> Tuple[int, int]:
        return MULTI_PANEL_CONFIGS.get(tuple(self.panel_dimensions), (1, 1))

    def expected_ports(self) -> int:
        ng, n1, n2 = self.panel_dimensions
        return 2 * ng * n1 * n2

    def validate(self, num_ports: Optional[int] = None):
        panel = tuple(self.panel_dimensions)
        if len(panel) != 3:
            raise CSIConfigurationError(
                f"panel_dimensions must be (Ng, N1, N2), got {panel}"
            )
        if self.codebook_mode not in (1, 2):
            raise CSIConfigurationError(
                f"codebook_mode ({self.codebook_mode}) must be 1 or 2"
            )
        if panel not in MULTI_PANEL_CONFIGS:
            raise CSIConfigurationError(
                f"Panel {panel} is not in TS 38.214 Table 5.2.2.2.2-1"
            )
        if self.codebook_mode == 2 and panel[0] != 2:
            raise CSIConfigurationError(
                f"Codebook mode 2 requires Ng = 2, got Ng = {panel[0]}"
            )
        if num_ports is not None:
            if num_ports not in (8, 16, 32):
                raise CSIConfigurationError(
                    f"Multi-panel codebooks need 8, 16 or 32 ports, got {num_ports}"
                )
            if self.expected_ports() != num_ports:
                raise CSIConfigurationError(
                    f"Panel {panel} does not match {num_ports} CSI-RS ports"
                )
        self.subset_restriction()

    def subset_restriction(self, num_ports: Optional[int] = None) -> np.ndarray:
        _, n1, n2 = self.panel_dimensions
        o1, o2 = self.oversampling_factors
        return _as_bits("codebook_subset_restriction",
                        self.codebook_subset_restriction, n1 * o1 * n2 * o2)


@dataclass
class _TypeIIBase:
    """Fields shared by the Type II and enhanced Type II families"""
    panel_dimensions: Tuple[int, int] = (2, 1)          # (N1, N2)
    codebook_subset_restriction: Optional[List[int]] = None

    @property
    def oversampling_factors(self) -> Tuple[int, int]:
        """Type II families use O1 = 4 and O2 = 4 only for 2D panels"""
        return (4, 1 + 3 * (self.panel_dimensions[1] > 1))

    def expected_ports(self) -> int:
        n1, n2 = self.panel_dimensions
        return 2 * n1 * n2

    def _validate_panel(self, num_ports: Optional[int]):
        panel = tuple(self.panel_dimensions)
        if len(panel) != 2 or panel not in SINGLE_PANEL_CONFIGS:
            raise CSIConfigurationError(
                f"Panel {panel} is not in TS 38.214 Table 5.2.2.2.1-2"
            )
        if num_ports is None:
            return
        if num_ports < 4:
            raise CSIConfigurationError(
                "Type II codebooks need at least 4 CSI-RS ports"
            )
        if self.expected_ports() != num_ports:
            raise CSIConfigurationError(
                f"Panel {panel} does not match {num_ports} CSI-RS ports"
            )

    def subset_restriction(self, num_ports: Optional[int] = None) -> np.ndarray:
        n1, n2 = self.panel_dimensions
        length = 8 * n1 * n2 + (11 if n2 > 1 else 0)
        return _as_bits("codebook_subset_restriction",
                        self.codebook_subset_restriction, length)


@dataclass
class TypeIIConfig(_TypeIIBase):
    """Type II (Rel-15) port-selection-free codebook parameters"""
    codebook_type: ClassVar[CodebookType] = CodebookType.TYPE_II
    max_layers: ClassVar[int] = 2

    number_of_beams: int = 2                # L in {2, 3, 4}
    phase_alphabet_size: int = 4            # NPSK in {4, 8}
    subband_amplitude: bool = False

    def validate(self, num_ports: Optional[int] = None):
        self._validate_panel(num_ports)
        if self.number_of_beams not in (2, 3, 4):
            raise CSIConfigurationError(
                f"number_of_beams ({self.number_of_beams}) must be 2, 3 or 4"
            )
        if num_ports == 4 and self.number_of_beams > 2:
            raise CSIConfigurationError(
                "number_of_beams must be 2 with 4 CSI-RS ports"
            )
        if self.phase_alphabet_size not in (4, 8):
            raise CSIConfigurationError(
                f"phase_alphabet_size ({self.phase_alphabet_size}) must be 4 or 8"
            )
        self.subset_restriction()


@dataclass
class EnhancedTypeIIConfig(_TypeIIBase):
    """Enhanced Type II (Rel-16) codebook parameters"""
    codebook_type: ClassVar[CodebookType] = CodebookType.ENHANCED_TYPE_II
    max_layers: ClassVar[int] = 4
    phase_alphabet_size: ClassVar[int] = 16

    parameter_combination: int = 1          # Table 5.2.2.2.5-1 row
    pmi_subbands_per_cqi_subband: int = 1   # R in {1, 2}

    def parameters(self, num_layers: int) -> Tuple[int, float, float]:
        """(L, pv, beta) for the configured combination and rank"""
        beams, pv12, pv34, beta = ENHANCED_TYPE_II_PARAMETERS[self.parameter_combination]
        pv = pv12 if (num_layers - 1) // 2 == 0 else pv34
        return beams, pv, beta

    @property
    def number_of_beams(self) -> int:
        return ENHANCED_TYPE_II_PARAMETERS[self.parameter_combination][0]

    def validate(self, num_ports: Optional[int] = None):
        self._validate_panel(num_ports)
        combo = self.parameter_combination
        if combo not in ENHANCED_TYPE_II_PARAMETERS:
            raise CSIConfigurationError(
                f"parameter_combination ({combo}) must be in 1..8"
            )
        if num_ports == 4 and combo >= 3:
            raise CSIConfigurationError(
                "parameter_combination must be less than 3 with 4 CSI-RS ports"
            )
        if num_ports is not None and num_ports < 32 and combo >= 7:
            raise CSIConfigurationError(
                "parameter_combination must be less than 7 with fewer than 32 ports"
            )
        if self.pmi_subbands_per_cqi_subband not in (1, 2):
            raise CSIConfigurationError(
                "pmi_subbands_per_cqi_subband must be 1 or 2"
            )
        if combo >= 7 and self.pmi_subbands_per_cqi_subband == 2:
            raise CSIConfigurationError(
                "parameter_combination must be less than 7 when "
                "pmi_subbands_per_cqi_subband is 2"
            )
        self.subset_restriction()


CodebookConfig = Union[
    TypeISinglePanelConfig,
    TypeIMultiPanelConfig,
    TypeIIConfig,
    EnhancedTypeIIConfig,
]

_CODEBOOK_CLASSES = {
    CodebookType.TYPE_I_SINGLE_PANEL: TypeISinglePanelConfig,
    CodebookType.TYPE_I_MULTI_PANEL: TypeIMultiPanelConfig,
    CodebookType.TYPE_II: TypeIIConfig,
    CodebookType.ENHANCED_TYPE_II: EnhancedTypeIIConfig,
}


# =============================================================================
# Report Configuration
# =============================================================================

@dataclass
class CSIReportConfig:
    """
    CSI report configuration

    Holds the BWP, the codebook family variant and the reporting
    granularity. Call validate() once before running any selection;
    selectors call it themselves with the port and layer counts taken
    from the channel estimate.
    """
    n_size_bwp: int = 52
    n_start_bwp: int = 0
    codebook: CodebookConfig = field(default_factory=TypeISinglePanelConfig)

    # Reporting granularity
    pmi_mode: ReportingMode = ReportingMode.WIDEBAND
    cqi_mode: ReportingMode = ReportingMode.WIDEBAND
    subband_size: Optional[int] = None      # NSBPRB, required for subband mode
    prg_size: Optional[int] = None          # 2 or 4, Type I single-panel only

    # Restrictions
    ri_restriction: Optional[List[int]] = None

    cqi_table: CQITableName = CQITableName.TABLE1

    @property
    def codebook_type(self) -> CodebookType:
        return self.codebook.codebook_type

    @property
    def max_layers(self) -> int:
        """Codebook family layer cap"""
        return self.codebook.max_layers

    def rank_restriction(self) -> np.ndarray:
        """Rank restriction bits, bit r-1 enables rank r"""
        return _as_bits("ri_restriction", self.ri_restriction, self.max_layers)

    def validate(
        self,
        carrier: Optional[CarrierConfig] = None,
        num_ports: Optional[int] = None,
        num_layers: Optional[int] = None,
        num_rx: Optional[int] = None,
    ) -> "CSIReportConfig":
        """
        Validate the configuration

        Args:
            carrier: Carrier the BWP must fit in
            num_ports: CSI-RS port count taken from the channel estimate
            num_layers: Number of transmission layers being evaluated
            num_rx: Receive antenna count taken from the channel estimate

        Returns:
            self, to allow chaining

        Raises:
            CSIConfigurationError: on any inconsistency
        """
        if not 1 <= self.n_size_bwp <= 275:
            raise CSIConfigurationError(
                f"n_size_bwp ({self.n_size_bwp}) must be in 1..275"
            )
        if not 0 <= self.n_start_bwp <= 2473:
            raise CSIConfigurationError(
                f"n_start_bwp ({self.n_start_bwp}) must be in 0..2473"
            )
        if carrier is not None:
            if self.n_start_bwp < carrier.n_start_grid:
                raise CSIConfigurationError(
                    f"BWP start ({self.n_start_bwp}) is below the carrier "
                    f"start ({carrier.n_start_grid})"
                )
            if self.n_start_bwp + self.n_size_bwp > carrier.n_start_grid + carrier.n_size_grid:
                raise CSIConfigurationError(
                    f"BWP [{self.n_start_bwp}, {self.n_start_bwp + self.n_size_bwp}) "
                    f"exceeds the carrier grid"
                )

        self.codebook.validate(num_ports)

        if self.prg_size is not None:
            if self.codebook_type != CodebookType.TYPE_I_SINGLE_PANEL:
                raise CSIConfigurationError(
                    "prg_size applies to Type I single-panel codebooks only"
                )
            if self.prg_size not in (2, 4):
                raise CSIConfigurationError(
                    f"prg_size ({self.prg_size}) must be 2 or 4"
                )

        needs_subband_size = (
            (self.pmi_mode == ReportingMode.SUBBAND and self.prg_size is None)
            or self.cqi_mode == ReportingMode.SUBBAND
        )
        if needs_subband_size and self.n_size_bwp >= 24:
            if self.subband_size is None:
                raise CSIConfigurationError(
                    "subband_size is required for subband reporting when the "
                    "BWP is 24 RBs or larger"
                )
            allowed = valid_subband_sizes(self.n_size_bwp)
            if self.subband_size not in allowed:
                raise CSIConfigurationError(
                    f"For BWP size {self.n_size_bwp}, subband_size "
                    f"({self.subband_size}) must be one of {allowed}"
                )

        self.rank_restriction()

        if num_layers is not None:
            if not 1 <= num_layers <= self.max_layers:
                raise CSIConfigurationError(
                    f"num_layers ({num_layers}) must be in 1..{self.max_layers} "
                    f"for {self.codebook_type.value} codebooks"
                )
            if num_ports is not None and num_rx is not None:
                if num_layers > min(num_ports, num_rx):
                    raise CSIConfigurationError(
                        f"A {num_ports}x{num_rx} antenna configuration supports "
                        f"at most {min(num_ports, num_rx)} layers"
                    )
            if isinstance(self.codebook, EnhancedTypeIIConfig):
                if num_layers > 2 and self.codebook.parameter_combination >= 7:
                    raise CSIConfigurationError(
                        "parameter_combination must be less than 7 for 3 or 4 layers"
                    )
        return self

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict view, used by the REST layer"""
        codebook = {
            key: (list(value) if isinstance(value, tuple) else value)
            for key, value in vars(self.codebook).items()
        }
        codebook["codebook_type"] = self.codebook_type.value
        return {
            "n_size_bwp": self.n_size_bwp,
            "n_start_bwp": self.n_start_bwp,
            "codebook": codebook,
            "pmi_mode": self.pmi_mode.value,
            "cqi_mode": self.cqi_mode.value,
            "subband_size": self.subband_size,
            "prg_size": self.prg_size,
            "ri_restriction": self.ri_restriction,
            "cqi_table": self.cqi_table.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CSIReportConfig":
        """
        Build a report configuration from a plain dict

        The codebook variant is selected by the "codebook_type" key of the
        nested "codebook" dict and defaults to Type I single-panel.
        """
        codebook_data = dict(data.get("codebook", {}))
        try:
            codebook_type = CodebookType(
                codebook_data.pop("codebook_type", CodebookType.TYPE_I_SINGLE_PANEL.value)
            )
            if "panel_dimensions" in codebook_data:
                codebook_data["panel_dimensions"] = tuple(codebook_data["panel_dimensions"])
            codebook = _CODEBOOK_CLASSES[codebook_type](**codebook_data)

            return cls(
                n_size_bwp=int(data.get("n_size_bwp", 52)),
                n_start_bwp=int(data.get("n_start_bwp", 0)),
                codebook=codebook,
                pmi_mode=ReportingMode(data.get("pmi_mode", "wideband")),
                cqi_mode=ReportingMode(data.get("cqi_mode", "wideband")),
                subband_size=data.get("subband_size"),
                prg_size=data.get("prg_size"),
                ri_restriction=data.get("ri_restriction"),
                cqi_table=CQITableName(data.get("cqi_table", "table1")),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, CSIConfigurationError):
                raise
            raise CSIConfigurationError(f"Invalid report configuration: {e}") from e
