"""
5G NR Downlink CSI Feedback Engine

Computes Channel State Information feedback per 3GPP TS 38.214:
- RI: rank selection under the MaxSINR or MaxSE objective
- PMI: Type I single-panel, Type I multi-panel, Type II and enhanced
  Type II codebooks, wideband and subband
- CQI: table lookup or EESM BLER mapping, wideband and differential subband
- REST service exposing the engine

References:
- 3GPP TS 38.214: Physical layer procedures for data
- 3GPP TS 38.211: Physical channels and modulation
- 3GPP TS 38.331: Radio Resource Control protocol specification
"""

__version__ = "0.1.0"
__author__ = "O-RAN Research Team"

from .config import (
    CarrierConfig,
    CSIReportConfig,
    CSIConfigurationError,
    CodebookType,
    ReportingMode,
    CQITableName,
    TypeISinglePanelConfig,
    TypeIMultiPanelConfig,
    TypeIIConfig,
    EnhancedTypeIIConfig,
)
from .subband import SubbandInfo, get_subband_info, get_pmi_subband_info, get_cqi_subband_info
from .beam_codebook import Codebook, CodebookBuilder, TypeISinglePanelCodebook, TypeIMultiPanelCodebook
from .sinr import SINREvaluator, precoded_sinr
from .pmi_selector import PMISelector, PMISet, PMIInfo
from .cqi_selector import CQISelector, CQIInfo, differential_cqi
from .ri_selector import RISelector, RIResult, RIAlgorithm
from .link_abstraction import EESMBLERMapper, BLERMapper, CQI_TABLES, cqi_table
from .messages import CSIRequest, CSIReport

__all__ = [
    # Configuration
    "CarrierConfig",
    "CSIReportConfig",
    "CSIConfigurationError",
    "CodebookType",
    "ReportingMode",
    "CQITableName",
    "TypeISinglePanelConfig",
    "TypeIMultiPanelConfig",
    "TypeIIConfig",
    "EnhancedTypeIIConfig",
    # Subbands and codebooks
    "SubbandInfo",
    "get_subband_info",
    "get_pmi_subband_info",
    "get_cqi_subband_info",
    "Codebook",
    "CodebookBuilder",
    "TypeISinglePanelCodebook",
    "TypeIMultiPanelCodebook",
    # Selection
    "SINREvaluator",
    "precoded_sinr",
    "PMISelector",
    "PMISet",
    "PMIInfo",
    "CQISelector",
    "CQIInfo",
    "differential_cqi",
    "RISelector",
    "RIResult",
    "RIAlgorithm",
    # Link abstraction
    "EESMBLERMapper",
    "BLERMapper",
    "CQI_TABLES",
    "cqi_table",
    # Messages
    "CSIRequest",
    "CSIReport",
]
