"""
Rank Indicator (RI) Selection

Joint rank and precoder selection per 3GPP TS 38.214 Section 5.2.2.2:
- Rank bound from the antenna counts and the codebook family
- Rank restriction bit mask
- MaxSINR: total of the rank-scaled layer SINRs at or above 0 dB, with a
  0.1 margin before a higher rank replaces the current best
- MaxSE: spectral efficiency of the wideband CQI of each rank

References:
- 3GPP TS 38.214 Section 5.2.2.2: Precoding matrix indicator
- 3GPP TS 38.331: typeI-SinglePanel-ri-Restriction, typeII-RI-Restriction
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from .config import CarrierConfig, CodebookType, CSIReportConfig, EnhancedTypeIIConfig
from .cqi_selector import CQISelector
from .link_abstraction import spectral_efficiency
from .pmi_selector import PMIInfo, PMISelector, PMISet
from .sinr import MIN_NOISE_VARIANCE, SINREvaluator, extract_csirs_resources, nanmean

logger = logging.getLogger(__name__)


class RIAlgorithm(Enum):
    """Rank selection objective"""
    MAX_SINR = "max_sinr"
    MAX_SE = "max_se"


# Minimum SINR improvement (linear) for a higher rank to replace the best
RANK_SINR_MARGIN = 0.1


@dataclass
class RIResult:
    """Selected rank, its PMI and the metric of every evaluated rank"""
    ri: float                               # rank, NaN for no report
    pmi: PMISet
    algorithm: RIAlgorithm = RIAlgorithm.MAX_SINR
    metrics: Dict[int, float] = field(default_factory=dict)
    pmi_info: Optional[PMIInfo] = None      # search details of the selected rank

    @property
    def is_valid(self) -> bool:
        return not np.isnan(self.ri)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ri": int(self.ri) if self.is_valid else None,
            "pmi": self.pmi.to_dict(),
            "algorithm": self.algorithm.value,
            "metrics": {
                str(rank): (None if np.isnan(value) else float(value))
                for rank, value in self.metrics.items()
            },
        }


class RISelector:
    """
    Rank selection driving the PMI (MaxSINR) or CQI (MaxSE) selection per rank

    Args:
        config: Report configuration
        carrier: Carrier grid
        evaluator: Shared SINR evaluator
        pmi_selector: PMI selector used by MaxSINR
        cqi_selector: CQI selector used by MaxSE
        algorithm: Default objective
    """

    def __init__(
        self,
        config: CSIReportConfig,
        carrier: Optional[CarrierConfig] = None,
        evaluator: Optional[SINREvaluator] = None,
        pmi_selector: Optional[PMISelector] = None,
        cqi_selector: Optional[CQISelector] = None,
        algorithm: RIAlgorithm = RIAlgorithm.MAX_SINR,
    ):
        self.config = config
        self.carrier = carrier or CarrierConfig()
        self.pmi_selector = pmi_selector or PMISelector(config, self.carrier, evaluator)
        self.cqi_selector = cqi_selector or CQISelector(
            config, self.carrier, pmi_selector=self.pmi_selector
        )
        self.algorithm = RIAlgorithm(algorithm)

    def max_rank(self, num_rx: int, num_ports: int) -> int:
        codebook_type = self.config.codebook_type
        if codebook_type == CodebookType.TYPE_I_SINGLE_PANEL:
            return min(num_rx, num_ports, 8)
        codebook = self.config.codebook
        if codebook_type == CodebookType.TYPE_II or (
            isinstance(codebook, EnhancedTypeIIConfig) and codebook.parameter_combination in (7, 8)
        ):
            return min(num_rx, 2)
        return min(num_rx, 4)

    def valid_ranks(self, num_rx: int, num_ports: int) -> List[int]:
        """Ranks allowed by both the restriction bits and the rank bound"""
        bits = self.config.rank_restriction()
        bound = self.max_rank(num_rx, num_ports)
        return [rank for rank in range(1, bound + 1) if rank <= len(bits) and bits[rank - 1]]

    def select(
        self,
        H: np.ndarray,
        csirs_k: np.ndarray,
        csirs_l: np.ndarray,
        noise_variance: float = MIN_NOISE_VARIANCE,
        algorithm: Optional[RIAlgorithm] = None,
    ) -> RIResult:
        """
        Select the rank and its PMI

        Args:
            H: Channel estimate (K, L, nRx, P) spanning the carrier grid
            csirs_k: 0-based carrier subcarriers of the CSI-RS REs
            csirs_l: 0-based OFDM symbols of the CSI-RS REs
            noise_variance: Noise variance, floored at 1e-10
            algorithm: Objective overriding the default

        Returns:
            RIResult; ri is NaN with the rank-1 NaN PMI when no rank is
            valid or no CSI-RS falls in the BWP
        """
        algorithm = RIAlgorithm(algorithm or self.algorithm)
        H = np.asarray(H)
        if H.ndim != 4:
            raise ValueError(f"Channel estimate must be K x L x nRx x P, got shape {H.shape}")
        num_rx, num_ports = H.shape[2], H.shape[3]
        self.config.validate(self.carrier, num_ports)
        noise_variance = max(float(noise_variance), MIN_NOISE_VARIANCE)

        nan_pmi, _ = self.pmi_selector.nan_result(num_ports, 1)
        ranks = self.valid_ranks(num_rx, num_ports)
        resources = extract_csirs_resources(self.carrier, self.config, H, csirs_k, csirs_l)
        if not ranks or resources.num_re == 0:
            logger.warning(f"No valid rank ({ranks}) or no CSI-RS in the BWP, reporting no RI")
            return RIResult(ri=np.nan, pmi=nan_pmi, algorithm=algorithm)

        if algorithm == RIAlgorithm.MAX_SINR:
            result = self._select_max_sinr(H, csirs_k, csirs_l, noise_variance, ranks, nan_pmi)
        else:
            result = self._select_max_se(H, csirs_k, csirs_l, noise_variance, ranks, nan_pmi)
        logger.info(f"Selected RI={result.ri} ({algorithm.value}) among ranks {ranks}")
        return result

    def _select_max_sinr(self, H, csirs_k, csirs_l, noise_variance, ranks, nan_pmi) -> RIResult:
        best_sinr = -np.inf
        result = RIResult(ri=np.nan, pmi=nan_pmi, algorithm=RIAlgorithm.MAX_SINR)
        for rank in ranks:
            pmi, info = self.pmi_selector.select(H, csirs_k, csirs_l, rank, noise_variance)
            total = np.nan
            if pmi.is_valid:
                # Layer SINR scaled by the rank before the 0 dB floor
                layer_sinr = rank * nanmean(info.sinr_per_subband, axis=0)
                total = float(np.sum(layer_sinr[layer_sinr >= 1]))
            result.metrics[rank] = total
            logger.debug(f"Rank {rank}: total SINR {total}")
            if total > best_sinr + RANK_SINR_MARGIN:
                best_sinr = total
                result.ri = rank
                result.pmi = pmi
                result.pmi_info = info
        return result

    def _select_max_se(self, H, csirs_k, csirs_l, noise_variance, ranks, nan_pmi) -> RIResult:
        table = self.config.cqi_table
        efficiency = np.full(len(ranks), np.nan)
        pmis = []
        infos = []
        for position, rank in enumerate(ranks):
            cqi, pmi, cqi_info, pmi_info = self.cqi_selector.select(
                H, csirs_k, csirs_l, rank, noise_variance
            )
            pmis.append(pmi)
            infos.append(pmi_info)
            wideband = cqi[0]
            if np.any(wideband == 0):
                efficiency[position] = 0.0
            elif not np.any(np.isnan(wideband)):
                bler = cqi_info.transport_bler[0]
                num_cw = wideband.size
                cw_layers = np.floor((rank + np.arange(num_cw)) / num_cw)
                efficiency[position] = float(
                    np.sum(cw_layers * (1 - bler) * spectral_efficiency(table, wideband))
                )
            logger.debug(f"Rank {rank}: CQI {wideband.tolist()}, efficiency {efficiency[position]}")

        metrics = dict(zip(ranks, efficiency.tolist()))
        if np.all(np.isnan(efficiency)):
            return RIResult(ri=np.nan, pmi=nan_pmi, algorithm=RIAlgorithm.MAX_SE, metrics=metrics)
        best = int(np.nanargmax(efficiency))
        return RIResult(
            ri=ranks[best], pmi=pmis[best], algorithm=RIAlgorithm.MAX_SE,
            metrics=metrics, pmi_info=infos[best],
        )
