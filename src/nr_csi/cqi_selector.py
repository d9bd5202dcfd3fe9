"""
Channel Quality Indicator (CQI) Selection

CQI reporting per 3GPP TS 38.214 Section 5.2.2.1:
- Codeword SINR from the layer SINRs of the selected PMI
- Wideband and subband CQI, subbands as 2-bit differential values
- Table lookup against 15 SINR thresholds, or a BLER mapper
- PRG-based reporting with a seeded random i2 per CQI subband
- Per-RB, per-symbol codeword SINR diagnostic

References:
- 3GPP TS 38.214 Section 5.2.2.1: Channel quality indicator
- 3GPP TS 38.214 Table 5.2.2.1-1: Subband differential CQI mapping
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .config import CarrierConfig, CSIReportConfig, ReportingMode
from .link_abstraction import (
    BLERMapper,
    EESMBLERMapper,
    codeword_sinr,
    num_codewords,
)
from .pmi_selector import PMIInfo, PMISelector, PMISet
from .sinr import MIN_NOISE_VARIANCE, SINREvaluator, nanmean, subband_mean
from .subband import SubbandInfo, get_cqi_subband_info, get_pmi_subband_info

logger = logging.getLogger(__name__)


def _to_list(values: np.ndarray):
    return np.where(np.isnan(values), None, values).tolist() if np.size(values) else []


@dataclass
class CQIInfo:
    """CQI diagnostics; row 0 is wideband when more than one CQI subband"""
    subband_cqi: np.ndarray                 # absolute CQI per row and codeword
    transport_bler: np.ndarray              # estimated BLER per row and codeword
    sinr_per_subband_per_cw: np.ndarray     # linear SINR per row and codeword
    sinr_per_rb_per_cw: np.ndarray          # (NSizeBWP, symbols, nCW) linear SINR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subband_cqi": _to_list(np.asarray(self.subband_cqi, dtype=float)),
            "transport_bler": _to_list(np.asarray(self.transport_bler, dtype=float)),
            "sinr_per_subband_per_cw": _to_list(np.asarray(self.sinr_per_subband_per_cw, dtype=float)),
        }


def differential_cqi(subband_cqi: np.ndarray, wideband_cqi: np.ndarray) -> np.ndarray:
    """
    Subband differential CQI per TS 38.214 Table 5.2.2.1-1

    Offsets 0 and 1 map to themselves, >= 2 to 2 and <= -1 to 3; NaN
    subbands stay NaN.
    """
    diff = np.asarray(subband_cqi, dtype=float) - np.asarray(wideband_cqi, dtype=float)
    code = np.full(diff.shape, np.nan)
    code[diff == 0] = 0
    code[diff == 1] = 1
    code[diff >= 2] = 2
    code[diff <= -1] = 3
    return code


def table_cqi(linear_sinr: np.ndarray, sinr_table: Sequence[float]) -> np.ndarray:
    """
    CQI from 15 SINR thresholds in dB

    The CQI is the last 1-based table position whose threshold does not
    exceed the SINR, 0 when none does. NaN SINR gives NaN.
    """
    table = np.asarray(sinr_table, dtype=float)
    sinr = np.asarray(linear_sinr, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        sinr_db = 10 * np.log10(sinr)
    matches = table <= sinr_db[..., None]
    found = np.any(matches, axis=-1)
    last = table.size - np.argmax(matches[..., ::-1], axis=-1)
    cqi = np.where(found, last, 0).astype(float)
    cqi[np.isnan(sinr)] = np.nan
    return cqi


def sinr_per_rb(sinr_per_re: np.ndarray, k: np.ndarray, l: np.ndarray,
                n_size_bwp: int, symbols_per_slot: int) -> np.ndarray:
    """
    Mean codeword SINR of the CSI-RS REs in each RB and OFDM symbol

    Args:
        sinr_per_re: Layer SINR at the CSI-RS REs, shape (nRE, nLayers)
        k: BWP-relative subcarrier of each RE
        l: OFDM symbol of each RE
        n_size_bwp: BWP size in RBs
        symbols_per_slot: OFDM symbols per slot

    Returns:
        Array (n_size_bwp, symbols_per_slot, nCW); NaN where no CSI-RS RE
    """
    num_cw = num_codewords(sinr_per_re.shape[1])
    sums = np.zeros((n_size_bwp, symbols_per_slot, num_cw))
    counts = np.zeros((n_size_bwp, symbols_per_slot))
    if len(k):
        per_cw = codeword_sinr(sinr_per_re)
        rb = np.asarray(k) // 12
        np.add.at(sums, (rb, l), per_cw)
        np.add.at(counts, (rb, l), 1)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = sums / counts[..., None]
    out[counts == 0] = np.nan
    return out


class CQISelector:
    """
    CQI selection on top of the PMI selection

    Exactly one CQI source is used: the 15-entry SINR threshold table when
    given, the BLER mapper otherwise. The only random draw (PRG reporting)
    uses numpy.random.default_rng(prg_seed), seeded per call.
    """

    def __init__(
        self,
        config: CSIReportConfig,
        carrier: Optional[CarrierConfig] = None,
        evaluator: Optional[SINREvaluator] = None,
        pmi_selector: Optional[PMISelector] = None,
        bler_mapper: Optional[BLERMapper] = None,
        sinr_table: Optional[Sequence[float]] = None,
        prg_seed: int = 0,
    ):
        self.config = config
        self.carrier = carrier or CarrierConfig()
        self.pmi_selector = pmi_selector or PMISelector(config, self.carrier, evaluator)
        self.bler_mapper = bler_mapper or EESMBLERMapper()
        self.prg_seed = prg_seed
        self.sinr_table = None
        if sinr_table is not None:
            self.sinr_table = np.asarray(sinr_table, dtype=float).ravel()
            if self.sinr_table.size != 15:
                raise ValueError(
                    f"SINR table must hold 15 thresholds, got {self.sinr_table.size}"
                )

    # -------------------------------------------------------------------------
    # Output shapes
    # -------------------------------------------------------------------------

    @staticmethod
    def _num_rows(cqi_subbands: SubbandInfo) -> int:
        n = cqi_subbands.num_subbands
        return 1 + (n if n > 1 else 0)

    def nan_result(self, num_layers: int) -> Tuple[np.ndarray, CQIInfo]:
        """No-report CQI matrix and diagnostics"""
        cqi_subbands = get_cqi_subband_info(self.config)
        num_cw = num_codewords(num_layers)
        rows = self._num_rows(cqi_subbands)
        info = CQIInfo(
            subband_cqi=np.full((rows, num_cw), np.nan),
            transport_bler=np.full((rows, num_cw), np.nan),
            sinr_per_subband_per_cw=np.full((rows, num_cw), np.nan),
            sinr_per_rb_per_cw=np.full(
                (self.config.n_size_bwp, self.carrier.symbols_per_slot, num_cw), np.nan
            ),
        )
        return np.full((rows, num_cw), np.nan), info

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def select(
        self,
        H: np.ndarray,
        csirs_k: np.ndarray,
        csirs_l: np.ndarray,
        num_layers: int,
        noise_variance: float = MIN_NOISE_VARIANCE,
    ) -> Tuple[np.ndarray, PMISet, CQIInfo, PMIInfo]:
        """
        Select PMI and CQI for a number of layers

        Args:
            H: Channel estimate (K, L, nRx, P) spanning the carrier grid
            csirs_k: 0-based carrier subcarriers of the CSI-RS REs
            csirs_l: 0-based OFDM symbols of the CSI-RS REs
            num_layers: Transmission rank
            noise_variance: Noise variance; exactly 0 means no report

        Returns:
            (cqi, pmi, cqi_info, pmi_info). cqi has one row (wideband)
            plus one differential row per CQI subband in subband mode.
        """
        pmi, pmi_info = self.pmi_selector.select(H, csirs_k, csirs_l, num_layers, noise_variance)
        cqi, info = self.cqi_for_pmi(pmi, pmi_info, num_layers, noise_variance)
        return cqi, pmi, info, pmi_info

    def cqi_for_pmi(
        self,
        pmi: PMISet,
        pmi_info: PMIInfo,
        num_layers: int,
        noise_variance: float = MIN_NOISE_VARIANCE,
    ) -> Tuple[np.ndarray, CQIInfo]:
        """
        CQI for an already selected PMI

        Returns:
            (cqi, cqi_info) as in select()
        """
        cqi_subbands = get_cqi_subband_info(self.config)

        if len(pmi_info.csirs_k) == 0 or noise_variance == 0 or not pmi.is_valid:
            logger.warning("No CSI-RS, zero noise variance or no PMI, reporting no CQI")
            return self.nan_result(num_layers)

        if self.config.prg_size is not None:
            layer_sinr, sinr_per_re = self._prg_sinr(pmi, pmi_info, cqi_subbands)
        else:
            sinr_per_re = pmi_info.sinr_per_re_pmi
            layer_sinr = subband_mean(
                sinr_per_re, cqi_subbands.subband_of(pmi_info.csirs_k), cqi_subbands.num_subbands
            )

        sinr_per_rb_per_cw = sinr_per_rb(
            sinr_per_re, pmi_info.csirs_k, pmi_info.csirs_l,
            self.config.n_size_bwp, self.carrier.symbols_per_slot,
        )

        if self.sinr_table is not None:
            sinr_per_cw = codeword_sinr(layer_sinr)
            if sinr_per_cw.shape[0] > 1:
                sinr_per_cw = np.vstack([nanmean(sinr_per_cw, axis=0), sinr_per_cw])
            all_cqi = table_cqi(sinr_per_cw, self.sinr_table)
            bler = np.zeros(all_cqi.shape)
        else:
            # The mapper sees the SINR of the reported PMI, PRG or not
            all_cqi, sinr_per_cw, bler = self._mapper_cqi(
                pmi_info.sinr_per_re_pmi, pmi_info.csirs_k, cqi_subbands
            )

        if self.config.cqi_mode == ReportingMode.SUBBAND:
            cqi = np.vstack([all_cqi[:1], differential_cqi(all_cqi[1:], all_cqi[0])])
            info = CQIInfo(all_cqi, bler, sinr_per_cw, sinr_per_rb_per_cw)
        else:
            cqi = all_cqi[:1]
            info = CQIInfo(all_cqi[:1], bler[:1], sinr_per_cw[:1], sinr_per_rb_per_cw)

        logger.debug(f"CQI for {num_layers} layers: wideband={cqi[0].tolist()}")
        return cqi, info

    def _mapper_cqi(self, sinr_per_re: np.ndarray, k: np.ndarray, cqi_subbands: SubbandInfo):
        """CQI, effective SINR (linear) and BLER per CQI subband, wideband first"""
        table = self.config.cqi_table
        rows = []
        for sb in range(cqi_subbands.num_subbands):
            rows.append(self.bler_mapper(sinr_per_re[cqi_subbands.re_mask(k, sb)], table))
        if cqi_subbands.num_subbands > 1:
            rows.insert(0, self.bler_mapper(sinr_per_re, table))

        cqi = np.array([r[0] for r in rows], dtype=float)
        sinr_db = np.array([r[1] for r in rows], dtype=float)
        bler = np.array([r[2] for r in rows], dtype=float)
        return cqi, 10 ** (sinr_db / 10), bler

    def _prg_sinr(self, pmi: PMISet, pmi_info: PMIInfo,
                  cqi_subbands: SubbandInfo) -> Tuple[np.ndarray, np.ndarray]:
        """
        Layer SINR per CQI subband with one random i2 drawn among the PRGs

        Returns:
            (SINR per CQI subband (nSB, nLayers), SINR per RE (nRE, nLayers))
        """
        rng = np.random.default_rng(self.prg_seed)
        prgs = get_pmi_subband_info(self.config)
        k = pmi_info.csirs_k
        i1 = tuple(int(v) - 1 for v in pmi.i1)
        i2_all = np.atleast_1d(pmi.i2)
        num_layers = pmi_info.sinr_per_re_pmi.shape[1]

        layer_sinr = np.full((cqi_subbands.num_subbands, num_layers), np.nan)
        sinr_per_re = np.full((len(k), num_layers), np.nan)

        if self.config.cqi_mode == ReportingMode.SUBBAND:
            prg_to_cqi = cqi_subbands.subband_of(12 * prgs.starts)
            for sb in range(cqi_subbands.num_subbands):
                members = np.flatnonzero(prg_to_cqi == sb)
                if members.size == 0:
                    continue
                i2 = i2_all[members[rng.integers(members.size)]]
                if np.isnan(i2):
                    continue
                index = (int(i2) - 1,) + i1
                layer_sinr[sb] = nanmean(pmi_info.subband_sinrs[(members, slice(None)) + index], axis=0)
                mask = cqi_subbands.re_mask(k, sb)
                sinr_per_re[mask] = pmi_info.sinr_per_re[(mask, slice(None)) + index]
        else:
            candidates = i2_all[~np.isnan(i2_all)]
            i2 = candidates[rng.integers(candidates.size)]
            index = (int(i2) - 1,) + i1
            layer_sinr[:] = nanmean(pmi_info.subband_sinrs[(slice(None), slice(None)) + index], axis=0)
            sinr_per_re = pmi_info.sinr_per_re[(slice(None), slice(None)) + index]

        logger.debug(f"PRG CQI: seed={self.prg_seed}")
        return layer_sinr, sinr_per_re
