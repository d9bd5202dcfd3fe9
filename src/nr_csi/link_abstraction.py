"""
Link Abstraction for CQI Selection

Maps per-RE post-equalization SINR to a CQI index:
- CQI tables 1-3 with modulation order, code rate and spectral efficiency
- Layer to codeword mapping for 1-8 layers
- Exponential effective SINR mapping (EESM) with per-modulation beta
- Logistic BLER curve anchored at per-CQI AWGN 10% BLER thresholds

The mapper reports the highest CQI whose estimated BLER does not exceed
the target of the table in use (0.1 for tables 1 and 2, 1e-5 for table 3).

References:
- 3GPP TS 38.214 Tables 5.2.2.1-2, 5.2.2.1-3, 5.2.2.1-4: CQI tables
- 3GPP TS 38.211 Section 7.3.1.3: Layer mapping
- Brueninghaus et al., "Link performance models for system level
  simulations of broadband radio access systems", PIMRC 2005
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from scipy.special import expit, logsumexp

from .config import CQITableName

logger = logging.getLogger(__name__)


# =============================================================================
# CQI Tables
# =============================================================================

# Rows: CQI index, modulation order Qm, code rate x 1024, spectral efficiency
CQI_TABLES: Dict[CQITableName, np.ndarray] = {
    CQITableName.TABLE1: np.array([
        [0, np.nan, np.nan, np.nan],
        [1, 2, 78, 0.1523],
        [2, 2, 120, 0.2344],
        [3, 2, 193, 0.3770],
        [4, 2, 308, 0.6016],
        [5, 2, 449, 0.8770],
        [6, 2, 602, 1.1758],
        [7, 4, 378, 1.4766],
        [8, 4, 490, 1.9141],
        [9, 4, 616, 2.4063],
        [10, 6, 466, 2.7305],
        [11, 6, 567, 3.3223],
        [12, 6, 666, 3.9023],
        [13, 6, 772, 4.5234],
        [14, 6, 873, 5.1152],
        [15, 6, 948, 5.5547],
    ]),
    CQITableName.TABLE2: np.array([
        [0, np.nan, np.nan, np.nan],
        [1, 2, 78, 0.1523],
        [2, 2, 193, 0.3770],
        [3, 2, 449, 0.8770],
        [4, 4, 378, 1.4766],
        [5, 4, 490, 1.9141],
        [6, 4, 616, 2.4063],
        [7, 6, 466, 2.7305],
        [8, 6, 567, 3.3223],
        [9, 6, 666, 3.9023],
        [10, 6, 772, 4.5234],
        [11, 6, 873, 5.1152],
        [12, 8, 711, 5.5547],
        [13, 8, 797, 6.2266],
        [14, 8, 885, 6.9141],
        [15, 8, 948, 7.4063],
    ]),
    CQITableName.TABLE3: np.array([
        [0, np.nan, np.nan, np.nan],
        [1, 2, 30, 0.0586],
        [2, 2, 50, 0.0977],
        [3, 2, 78, 0.1523],
        [4, 2, 120, 0.2344],
        [5, 2, 193, 0.3770],
        [6, 2, 308, 0.6016],
        [7, 2, 449, 0.8770],
        [8, 2, 602, 1.1758],
        [9, 4, 378, 1.4766],
        [10, 4, 490, 1.9141],
        [11, 4, 616, 2.4063],
        [12, 6, 466, 2.7305],
        [13, 6, 567, 3.3223],
        [14, 6, 666, 3.9023],
        [15, 6, 772, 4.5234],
    ]),
}

BLER_TARGETS = {
    CQITableName.TABLE1: 0.1,
    CQITableName.TABLE2: 0.1,
    CQITableName.TABLE3: 1e-5,
}


def cqi_table(name: CQITableName) -> np.ndarray:
    """Full (16, 4) table; row index equals the CQI index"""
    return CQI_TABLES[CQITableName(name)]


def spectral_efficiency(name: CQITableName, cqi: np.ndarray) -> np.ndarray:
    """Spectral efficiency of CQI indices; NaN for CQI 0 or NaN"""
    cqi = np.asarray(cqi, dtype=float)
    table = cqi_table(name)
    out = np.full(cqi.shape, np.nan)
    valid = np.isfinite(cqi) & (cqi > 0)
    out[valid] = table[cqi[valid].astype(int), 3]
    return out


# =============================================================================
# Layer Mapping
# =============================================================================

def num_codewords(num_layers: int) -> int:
    """One codeword up to 4 layers, two above"""
    return 1 if num_layers <= 4 else 2


def codeword_layers(num_layers: int) -> List[np.ndarray]:
    """Layer indices carried by each codeword"""
    if num_codewords(num_layers) == 1:
        return [np.arange(num_layers)]
    first = num_layers // 2
    return [np.arange(first), np.arange(first, num_layers)]


def codeword_sinr(layer_sinr: np.ndarray) -> np.ndarray:
    """
    Sum layer SINRs per codeword

    Args:
        layer_sinr: SINR of shape (..., nLayers)

    Returns:
        Codeword SINR of shape (..., nCW); NaN where any layer is NaN
    """
    layer_sinr = np.asarray(layer_sinr, dtype=float)
    return np.stack(
        [layer_sinr[..., layers].sum(axis=-1) for layers in codeword_layers(layer_sinr.shape[-1])],
        axis=-1,
    )


# =============================================================================
# EESM BLER Mapper
# =============================================================================

# (sinr_per_re, table) -> (cqi, effective SINR in dB, BLER), one entry per codeword
BLERMapper = Callable[[np.ndarray, CQITableName], Tuple[np.ndarray, np.ndarray, np.ndarray]]

# AWGN SINR (dB) at 10% BLER of table 1, indexed by CQI - 1
TABLE1_SINR_THRESHOLDS_DB = np.array([
    -6.7, -4.7, -2.3, 0.2, 2.4, 4.3, 5.9, 8.1, 10.3, 11.7, 14.1, 16.3, 18.7, 21.0, 22.7
])

# EESM calibration factor per modulation order
EESM_BETA = {2: 1.6, 4: 6.5, 6: 24.0, 8: 70.0}


def sinr_thresholds_db(name: CQITableName) -> np.ndarray:
    """
    AWGN 10% BLER SINR thresholds of every CQI in a table

    Thresholds are interpolated in spectral efficiency from table 1;
    efficiencies above its top entry follow the Shannon slope.
    """
    table1 = CQI_TABLES[CQITableName.TABLE1][1:, 3]
    eff = cqi_table(name)[1:, 3]
    thresholds = np.interp(eff, table1, TABLE1_SINR_THRESHOLDS_DB)
    top = eff > table1[-1]
    if np.any(top):
        gain = (2.0 ** eff[top] - 1) / (2.0 ** table1[-1] - 1)
        thresholds[top] = TABLE1_SINR_THRESHOLDS_DB[-1] + 10 * np.log10(gain)
    low = eff < table1[0]
    if np.any(low):
        loss = (2.0 ** eff[low] - 1) / (2.0 ** table1[0] - 1)
        thresholds[low] = TABLE1_SINR_THRESHOLDS_DB[0] + 10 * np.log10(loss)
    return thresholds


class EESMBLERMapper:
    """
    Exponential effective SINR mapping with a logistic BLER curve

    For each CQI the effective SINR of a codeword is
        sinr_eff = -beta * ln(mean(exp(-sinr / beta)))
    with beta taken from the CQI modulation order, and the BLER is
        bler = 1 / (1 + 9 * exp(slope * (sinr_eff_db - threshold_db)))
    which equals 0.1 at the AWGN threshold of that CQI.
    """

    def __init__(self, slope: float = 1.5, beta: Optional[Dict[int, float]] = None):
        self.slope = slope
        self.beta = dict(EESM_BETA if beta is None else beta)

    def effective_sinr(self, sinr: np.ndarray, beta: float) -> float:
        """Linear EESM effective SINR of a set of linear SINR samples"""
        sinr = np.asarray(sinr, dtype=float).ravel()
        return float(-beta * (logsumexp(-sinr / beta) - np.log(sinr.size)))

    def bler(self, sinr_eff_db: float, threshold_db: float) -> float:
        return float(expit(-(self.slope * (sinr_eff_db - threshold_db) + np.log(9.0))))

    def map_codeword(self, sinr: np.ndarray, name: CQITableName) -> Tuple[float, float, float]:
        """
        CQI of one codeword

        Args:
            sinr: Linear SINR samples of the codeword (REs x layers)
            name: CQI table

        Returns:
            (cqi, effective SINR dB, BLER); all NaN without finite samples.
            CQI 0 reports the figures of CQI 1.
        """
        samples = np.asarray(sinr, dtype=float).ravel()
        samples = samples[np.isfinite(samples)]
        if samples.size == 0:
            return np.nan, np.nan, np.nan

        table = cqi_table(name)
        thresholds = sinr_thresholds_db(name)
        target = BLER_TARGETS[CQITableName(name)]

        cqi, sinr_db, bler = 0, np.nan, np.nan
        for index in range(1, table.shape[0]):
            beta = self.beta[int(table[index, 1])]
            eff = max(self.effective_sinr(samples, beta), np.finfo(float).tiny)
            eff_db = 10 * np.log10(eff)
            index_bler = self.bler(eff_db, thresholds[index - 1])
            if index == 1:
                sinr_db, bler = eff_db, index_bler
            if index_bler <= target:
                cqi, sinr_db, bler = index, eff_db, index_bler
        return float(cqi), float(sinr_db), float(bler)

    def __call__(self, sinr_per_re: np.ndarray, name: CQITableName):
        sinr_per_re = np.asarray(sinr_per_re, dtype=float)
        if sinr_per_re.ndim == 1:
            sinr_per_re = sinr_per_re[:, None]
        results = [
            self.map_codeword(sinr_per_re[:, layers], name)
            for layers in codeword_layers(sinr_per_re.shape[1])
        ]
        cqi, sinr_db, bler = (np.array(v, dtype=float) for v in zip(*results))
        logger.debug(f"EESM mapping: cqi={cqi.tolist()}, sinr_eff_db={np.round(sinr_db, 2).tolist()}")
        return cqi, sinr_db, bler
