"""
Subband Partitioning for CSI Reporting

Splits a bandwidth part into CQI/PMI subbands or precoding resource block
groups (PRGs) per 3GPP TS 38.214 Section 5.2.1.4. Subbands are aligned to
the common resource block grid, so the first and last subbands of a BWP
may be shorter than the nominal size.

References:
- 3GPP TS 38.214 Table 5.2.1.4-2: Configurable subband sizes
- 3GPP TS 38.214 Section 5.1.2.3: Physical resource block groups
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import (
    CSIConfigurationError,
    CSIReportConfig,
    CodebookType,
    ReportingMode,
    valid_subband_sizes,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubbandInfo:
    """Subband sizes in RBs, in frequency order, summing to the BWP size"""
    num_subbands: int
    sizes: np.ndarray

    @property
    def starts(self) -> np.ndarray:
        """First RB of each subband, relative to the BWP start"""
        return np.concatenate(([0], np.cumsum(self.sizes)[:-1])).astype(int)

    def re_mask(self, k: np.ndarray, subband: int) -> np.ndarray:
        """Mask of BWP-relative subcarriers k that fall in a subband"""
        start = int(self.starts[subband])
        stop = start + int(self.sizes[subband])
        return (k >= 12 * start) & (k < 12 * stop)

    def subband_of(self, k: np.ndarray) -> np.ndarray:
        """Subband index of each BWP-relative subcarrier"""
        edges = 12 * np.cumsum(self.sizes)
        return np.searchsorted(edges, np.asarray(k), side="right")


def get_subband_info(
    n_start_bwp: int,
    n_size_bwp: int,
    subband_size: Optional[int],
    mode: ReportingMode,
    ignore_bwp_size: bool = False,
    pmi_subbands_per_cqi_subband: int = 1,
) -> SubbandInfo:
    """
    Partition a BWP into subbands

    Args:
        n_start_bwp: BWP start in common resource blocks
        n_size_bwp: BWP size in RBs
        subband_size: Nominal subband (or PRG) size in RBs
        mode: Reporting granularity
        ignore_bwp_size: Skip the 24 RB floor and the size table (PRGs)
        pmi_subbands_per_cqi_subband: R, splits each subband in R parts

    Returns:
        SubbandInfo for the BWP

    Raises:
        CSIConfigurationError: if the subband size violates the size table
    """
    if mode == ReportingMode.WIDEBAND or (not ignore_bwp_size and n_size_bwp < 24):
        return SubbandInfo(num_subbands=1, sizes=np.array([n_size_bwp]))

    if subband_size is None:
        raise CSIConfigurationError("subband_size is required for subband reporting")
    if not ignore_bwp_size and subband_size not in valid_subband_sizes(n_size_bwp):
        raise CSIConfigurationError(
            f"For BWP size {n_size_bwp}, subband size ({subband_size}) must be "
            f"one of {valid_subband_sizes(n_size_bwp)}"
        )

    nsb = subband_size // pmi_subbands_per_cqi_subband
    prb = n_start_bwp + np.arange(n_size_bwp)
    groups = prb // nsb
    sizes = np.bincount(groups - groups[0])
    return SubbandInfo(num_subbands=len(sizes), sizes=sizes)


def get_pmi_subband_info(config: CSIReportConfig) -> SubbandInfo:
    """PMI subbands, or PRGs when a PRG size is configured"""
    if config.prg_size is not None:
        return get_subband_info(
            config.n_start_bwp,
            config.n_size_bwp,
            config.prg_size,
            ReportingMode.SUBBAND,
            ignore_bwp_size=True,
        )
    r = 1
    if config.codebook_type == CodebookType.ENHANCED_TYPE_II:
        r = config.codebook.pmi_subbands_per_cqi_subband
    return get_subband_info(
        config.n_start_bwp,
        config.n_size_bwp,
        config.subband_size,
        config.pmi_mode,
        pmi_subbands_per_cqi_subband=r,
    )


def get_cqi_subband_info(config: CSIReportConfig) -> SubbandInfo:
    """CQI subbands, following the CQI reporting mode"""
    return get_subband_info(
        config.n_start_bwp,
        config.n_size_bwp,
        config.subband_size,
        config.cqi_mode,
    )
