"""
Precoding Matrix Indicator (PMI) Selection

Two-stage PMI search per 3GPP TS 38.214 Section 5.2.2.2:
- Wideband stage: full codebook index search maximizing the total SINR
- Subband stage: i1 fixed, per-subband search over i2
- Type II / enhanced Type II: eigenvector projection onto every beam group,
  coefficient quantization and SINR evaluation of the quantized precoder
- Explicit "no report" outcome with family-specific NaN index shapes

Each codebook family is a strategy exposing compute_codebook,
wideband_search and subband_search; PMISelector picks one from the
report configuration.

References:
- 3GPP TS 38.214 Section 5.2.2.2: Precoding matrix indicator
- 3GPP TS 38.214 Table 5.2.2.2.3-5: Type II codebook
- 3GPP TS 38.214 Table 5.2.2.2.5-5: Enhanced Type II codebook
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .beam_codebook import (
    Codebook,
    CodebookBuilder,
    beam_max_amplitudes,
    build_w1,
)
from .config import (
    CarrierConfig,
    CodebookType,
    CSIReportConfig,
    EnhancedTypeIIConfig,
    TypeIIConfig,
)
from .quantizer import (
    EnhancedTypeIIQuantization,
    MAX_SUBBANDS_FULL_SEARCH,
    amplitude_rel15_index,
    combinatorial_index,
    compress_enhanced_type2,
    quantize_enhanced_type2,
    quantize_type2,
    quantize_type2_subband,
)
from .sinr import (
    CSIRSResources,
    MIN_NOISE_VARIANCE,
    SINREvaluator,
    extract_csirs_resources,
    nanmean,
    subband_mean,
)
from .subband import SubbandInfo, get_pmi_subband_info

logger = logging.getLogger(__name__)


def _nan_to_none(values: np.ndarray):
    return [None if np.isnan(v) else v for v in np.asarray(values, dtype=float).ravel(order="F")]


@dataclass
class PMISet:
    """
    Reported PMI indices, 1-based

    The all-NaN index set means no valid report for this opportunity.
    """
    i1: np.ndarray
    i2: np.ndarray

    @property
    def is_valid(self) -> bool:
        return not (np.all(np.isnan(self.i1)) and np.all(np.isnan(self.i2)))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view, NaN as None, arrays flattened column-major"""
        return {
            "i1": _nan_to_none(self.i1),
            "i2": _nan_to_none(self.i2),
            "i2_shape": list(np.shape(self.i2)),
            "valid": self.is_valid,
        }


@dataclass
class PMIInfo:
    """Diagnostics of a PMI selection"""
    W: np.ndarray                               # (P, nLayers) or (P, nLayers, nSB)
    sinr_per_re_pmi: np.ndarray                 # (nRE, nLayers) for the reported PMI
    sinr_per_subband: np.ndarray                # (nSB, nLayers) for the reported PMI
    csirs_k: np.ndarray                         # BWP-relative CSI-RS subcarriers
    csirs_l: np.ndarray                         # CSI-RS OFDM symbols
    codebook: Optional[Codebook] = None         # Type I only
    sinr_per_re: Optional[np.ndarray] = None    # (nRE, nLayers, *index_sizes), Type I
    subband_sinrs: Optional[np.ndarray] = None  # (nSB, nLayers, *index_sizes), Type I
    wb_info: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Strategies
# =============================================================================

class PMIStrategy:
    """Base class of the per-family PMI search"""

    def __init__(self, config: CSIReportConfig, evaluator: SINREvaluator):
        self.config = config
        self.evaluator = evaluator
        self.builder = CodebookBuilder(config)

    def compute_codebook(self, num_ports: int, num_layers: int) -> Optional[Codebook]:
        return None

    def needs_subband_stage(self, subband_info: SubbandInfo) -> bool:
        return subband_info.num_subbands > 1

    def nan_result(self, subband_info: SubbandInfo, num_ports: int, num_layers: int,
                   resources: Optional[CSIRSResources],
                   codebook: Optional[Codebook]) -> Tuple[PMISet, PMIInfo]:
        raise NotImplementedError

    def wideband_search(self, resources: CSIRSResources, codebook: Optional[Codebook],
                        num_layers: int, noise_variance: float
                        ) -> Optional[Tuple[PMISet, PMIInfo]]:
        raise NotImplementedError

    def subband_search(self, resources: CSIRSResources, codebook: Optional[Codebook],
                       subband_info: SubbandInfo, pmi: PMISet, info: PMIInfo,
                       noise_variance: float) -> Tuple[PMISet, PMIInfo]:
        raise NotImplementedError

    @staticmethod
    def _num_re(resources: Optional[CSIRSResources]) -> int:
        return 0 if resources is None else resources.num_re

    @staticmethod
    def _coords(resources: Optional[CSIRSResources]):
        if resources is None:
            return np.zeros(0, dtype=int), np.zeros(0, dtype=int)
        return resources.k, resources.l


class TypeIStrategy(PMIStrategy):
    """Shared exhaustive search of the enumerated Type I codebooks"""

    # Number of leading index dimensions that form i2
    num_i2_dims = 1

    def compute_codebook(self, num_ports: int, num_layers: int) -> Codebook:
        return self.builder.type1(num_ports, num_layers)

    def _split(self, index: Tuple[int, ...]) -> Tuple[np.ndarray, np.ndarray]:
        """(i1, i2) 1-based from a zero-based index tuple"""
        raise NotImplementedError

    def nan_result(self, subband_info, num_ports, num_layers, resources, codebook):
        num_sb = subband_info.num_subbands
        num_re = self._num_re(resources)
        k, l = self._coords(resources)
        pmi = self._nan_set(num_sb)
        sizes = codebook.index_sizes if codebook is not None else ()
        info = PMIInfo(
            W=np.full((num_ports, num_layers), np.nan),
            sinr_per_re_pmi=np.full((num_re, num_layers), np.nan),
            sinr_per_subband=np.full((num_sb, num_layers), np.nan),
            csirs_k=k,
            csirs_l=l,
            codebook=codebook,
            sinr_per_re=np.full((num_re, num_layers) + sizes, np.nan),
            subband_sinrs=np.full((num_sb, num_layers) + sizes, np.nan),
        )
        return pmi, info

    def _nan_set(self, num_subbands: int) -> PMISet:
        raise NotImplementedError

    def wideband_search(self, resources, codebook, num_layers, noise_variance):
        candidates = codebook.flat()
        sinr = self.evaluator.evaluate(resources.H, candidates, noise_variance)

        # Round before comparing so numerical noise does not flip the PMI
        total = np.round(np.nansum(sinr, axis=(0, 1)), 4)
        total[codebook.restricted_mask()] = -np.inf
        best = int(np.argmax(total))
        index = codebook.unravel(best)
        i1, i2 = self._split(index)

        shape = (resources.num_re, num_layers) + codebook.index_sizes
        sinr_per_re = sinr.reshape(shape, order="F")
        subband_sinrs = nanmean(sinr, axis=0)[None].reshape(
            (1, num_layers) + codebook.index_sizes, order="F"
        )
        info = PMIInfo(
            W=candidates[best],
            sinr_per_re_pmi=sinr[:, :, best],
            sinr_per_subband=nanmean(sinr[:, :, best], axis=0)[None],
            csirs_k=resources.k,
            csirs_l=resources.l,
            codebook=codebook,
            sinr_per_re=sinr_per_re,
            subband_sinrs=subband_sinrs,
        )
        logger.debug(f"Wideband PMI: i1={i1.tolist()}, i2={i2.ravel().tolist()}")
        return PMISet(i1=i1, i2=i2), info

    def subband_search(self, resources, codebook, subband_info, pmi, info, noise_variance):
        num_sb = subband_info.num_subbands
        num_layers = codebook.num_layers
        sizes = codebook.index_sizes
        n_i2 = self.num_i2_dims
        i2_sizes = sizes[:n_i2]
        i1_index = tuple(int(v) - 1 for v in self._i1_index(pmi))

        # Flat candidate positions of the i2 subspace, in enumeration order
        i2_tuples = [np.unravel_index(j, i2_sizes, order="F")
                     for j in range(int(np.prod(i2_sizes)))]
        positions = np.array([codebook.ravel(tuple(int(v) for v in t) + i1_index)
                              for t in i2_tuples])
        restricted = codebook.restricted_mask()[positions]

        candidates = codebook.flat()
        flat_sinr = info.sinr_per_re.reshape((resources.num_re, num_layers, -1), order="F")
        subband_of = subband_info.subband_of(resources.k)

        W = np.zeros((codebook.num_ports, num_layers, num_sb), dtype=complex)
        sinr_per_re_pmi = np.full((resources.num_re, num_layers), np.nan)
        sinr_per_subband = np.full((num_sb, num_layers), np.nan)
        subband_sinrs = np.full((num_sb, num_layers, codebook.num_candidates), np.nan)
        i2 = np.full((n_i2, num_sb), np.nan)

        for sb in range(num_sb):
            mask = subband_of == sb
            values = flat_sinr[mask]
            if values.size == 0 or np.all(np.isnan(values)):
                continue
            subband_sinrs[sb] = nanmean(values, axis=0)
            score = np.round(subband_sinrs[sb][:, positions].sum(axis=0), 4)
            score[restricted] = -np.inf
            best = int(np.argmax(score))
            chosen = positions[best]
            i2[:, sb] = np.array(i2_tuples[best]) + 1
            W[:, :, sb] = candidates[chosen]
            sinr_per_re_pmi[mask] = flat_sinr[mask][:, :, chosen]
            sinr_per_subband[sb] = subband_sinrs[sb, :, chosen]

        info = PMIInfo(
            W=W,
            sinr_per_re_pmi=sinr_per_re_pmi,
            sinr_per_subband=sinr_per_subband,
            csirs_k=resources.k,
            csirs_l=resources.l,
            codebook=codebook,
            sinr_per_re=info.sinr_per_re,
            subband_sinrs=subband_sinrs.reshape((num_sb, num_layers) + sizes, order="F"),
        )
        return PMISet(i1=pmi.i1, i2=self._format_i2(i2)), info

    def _i1_index(self, pmi: PMISet) -> np.ndarray:
        return pmi.i1

    def _format_i2(self, i2: np.ndarray) -> np.ndarray:
        return i2


class TypeISinglePanelStrategy(TypeIStrategy):
    """Index order (i2, i11, i12, i13); i1 = [i11, i12, i13]"""

    num_i2_dims = 1

    def _split(self, index):
        i2, i11, i12, i13 = (v + 1 for v in index)
        return np.array([i11, i12, i13], dtype=float), np.array([i2], dtype=float)

    def _nan_set(self, num_subbands):
        return PMISet(i1=np.full(3, np.nan), i2=np.full(num_subbands, np.nan))

    def _format_i2(self, i2):
        return i2[0]


class TypeIMultiPanelStrategy(TypeIStrategy):
    """Index order (i20, i21, i22, i11, i12, i13, i141, i142, i143)"""

    num_i2_dims = 3

    def _split(self, index):
        one_based = np.array(index, dtype=float) + 1
        return one_based[3:], one_based[:3].reshape(3, 1)

    def _nan_set(self, num_subbands):
        return PMISet(i1=np.full(6, np.nan), i2=np.full((3, num_subbands), np.nan))


class _TypeIIFamilyStrategy(PMIStrategy):
    """Shared beam-group search of the Type II families"""

    def _panel(self):
        n1, n2 = self.config.codebook.panel_dimensions
        o1, o2 = self.config.codebook.oversampling_factors
        return n1, n2, o1, o2

    def _num_beams(self, num_layers: int) -> int:
        raise NotImplementedError

    @staticmethod
    def eigenvectors(H: np.ndarray) -> np.ndarray:
        """Right singular vectors of H^H*H per RE, shape (nRE, P, P)"""
        HH = np.einsum("rxp,rxq->rpq", np.conj(H), H)
        V = np.full(HH.shape, np.nan, dtype=complex)
        finite = np.all(np.isfinite(HH), axis=(1, 2))
        if np.any(finite):
            _, _, vh = np.linalg.svd(HH[finite])
            V[finite] = np.conj(np.swapaxes(vh, -1, -2))
        return V

    def _quantize_wideband(self, W2: np.ndarray, max_amps: np.ndarray,
                           num_layers: int) -> Tuple[np.ndarray, np.ndarray]:
        """Quantized wideband coefficients (2L, layers) and per-layer normalization"""
        raise NotImplementedError

    def wideband_search(self, resources, codebook, num_layers, noise_variance):
        n1, n2, o1, o2 = self._panel()
        num_beams = self._num_beams(num_layers)
        V = self.eigenvectors(resources.H)
        eig = nanmean(V, axis=0)[:, :num_layers]

        m1_set, m2_set = self.builder.beam_groups(num_beams)
        table = self.builder.restriction_table()
        num_groups = m1_set.shape[0]
        sizes = (num_groups, o1, o2)
        num_cand = num_groups * o1 * o2

        precoders = np.full((num_cand, 2 * n1 * n2, num_layers), np.nan, dtype=complex)
        for position in range(num_cand):
            i12, q1, q2 = np.unravel_index(position, sizes, order="F")
            m1 = m1_set[i12, :, q1]
            m2 = m2_set[i12, :, q2]
            W1 = build_w1(n1, n2, o1, o2, m1, m2)
            W2 = (W1.conj().T @ eig) / (n1 * n2)
            max_amps = beam_max_amplitudes(table, m1, m2)
            W2q, norm = self._quantize_wideband(W2, max_amps, num_layers)
            with np.errstate(divide="ignore", invalid="ignore"):
                W = (W1 @ W2q) * norm
            if np.all(np.isfinite(W)):
                precoders[position] = W

        sinr = self.evaluator.evaluate(resources.H, precoders, noise_variance)
        score = nanmean(sinr, axis=(0, 1))
        if np.all(np.isnan(score)):
            logger.warning("No finite Type II precoder for the channel, reporting no PMI")
            return None
        best = int(np.nanargmax(score))
        i12, q1, q2 = (int(v) for v in np.unravel_index(best, sizes, order="F"))

        m1 = m1_set[i12, :, q1]
        m2 = m2_set[i12, :, q2]
        W1 = build_w1(n1, n2, o1, o2, m1, m2)
        W2 = W1.conj().T @ eig
        max_amps = beam_max_amplitudes(table, m1, m2)
        wb_info = {
            "W1": W1,
            "restricted_amplitudes": max_amps,
            "eigenvectors": V,
            "beam_group": (q1, q2, i12),
        }
        i1, i2 = self._wideband_indices(W2, max_amps, (q1 + 1, q2 + 1, i12 + 1), wb_info)

        info = PMIInfo(
            W=precoders[best],
            sinr_per_re_pmi=sinr[:, :, best],
            sinr_per_subband=nanmean(sinr[:, :, best], axis=0)[None],
            csirs_k=resources.k,
            csirs_l=resources.l,
            wb_info=wb_info,
        )
        logger.debug(f"Type II wideband beam group: q1={q1 + 1}, q2={q2 + 1}, i12={i12 + 1}")
        return PMISet(i1=i1, i2=i2), info

    def _wideband_indices(self, W2, max_amps, group, wb_info):
        raise NotImplementedError

    @staticmethod
    def _subband_eigenvectors(resources: CSIRSResources, subband_info: SubbandInfo,
                              V: np.ndarray, num_layers: int) -> np.ndarray:
        """Subband-averaged eigenvectors, shape (nSB, P, layers)"""
        subband_of = subband_info.subband_of(resources.k)
        ev = subband_mean(V, subband_of, subband_info.num_subbands)
        return ev[:, :, :num_layers]

    def _subband_sinr(self, resources, subband_info, W, noise_variance):
        num_layers = W.shape[1]
        subband_of = subband_info.subband_of(resources.k)
        sinr_per_re_pmi = np.full((resources.num_re, num_layers), np.nan)
        sinr_per_subband = np.full((subband_info.num_subbands, num_layers), np.nan)
        for sb in range(subband_info.num_subbands):
            mask = subband_of == sb
            if not np.any(mask):
                continue
            sinr = self.evaluator.evaluate_precoder(resources.H[mask], W[:, :, sb], noise_variance)
            sinr_per_re_pmi[mask] = sinr
            sinr_per_subband[sb] = nanmean(sinr, axis=0)
        return sinr_per_re_pmi, sinr_per_subband


class TypeIIStrategy(_TypeIIFamilyStrategy):
    """Rel-15 Type II codebook"""

    @property
    def codebook_config(self) -> TypeIIConfig:
        return self.config.codebook

    def _num_beams(self, num_layers):
        return self.codebook_config.number_of_beams

    def needs_subband_stage(self, subband_info):
        return subband_info.num_subbands > 1 or self.codebook_config.subband_amplitude

    def nan_result(self, subband_info, num_ports, num_layers, resources, codebook):
        cb = self.codebook_config
        num_sb = subband_info.num_subbands
        k, l = self._coords(resources)
        pmi = PMISet(
            i1=np.full(3 + (1 + 2 * cb.number_of_beams) * num_layers, np.nan),
            i2=np.full((2 * cb.number_of_beams,
                        num_layers * (1 + int(cb.subband_amplitude)), num_sb), np.nan),
        )
        info = PMIInfo(
            W=np.full((num_ports, num_layers, num_sb), np.nan),
            sinr_per_re_pmi=np.full((self._num_re(resources), num_layers), np.nan),
            sinr_per_subband=np.full((num_sb, num_layers), np.nan),
            csirs_k=k,
            csirs_l=l,
        )
        return pmi, info

    def _quantize_wideband(self, W2, max_amps, num_layers):
        n1, n2, _, _ = self._panel()
        W2q, p1, _, _, _ = quantize_type2(W2, self.codebook_config.phase_alphabet_size, max_amps)
        with np.errstate(divide="ignore"):
            norm = 1 / np.sqrt(num_layers * n1 * n2 * np.sum(p1 ** 2, axis=0))
        return W2q, norm

    def _wideband_indices(self, W2, max_amps, group, wb_info):
        n_psk = self.codebook_config.phase_alphabet_size
        _, p1, amplitudes, istar, c = quantize_type2(W2, n_psk, max_amps)
        i14 = amplitude_rel15_index(p1)
        per_layer = [np.concatenate([[istar[layer] + 1], i14[:, layer]])
                     for layer in range(W2.shape[1])]
        i1 = np.concatenate([np.array(group, dtype=float)] + per_layer).astype(float)
        wb_info.update({
            "wideband_amplitudes": amplitudes,
            "wideband_p1": p1,
            "istar": istar,
        })
        # Wideband-only reports carry one phase set
        return i1, c[:, :, None].astype(float)

    def subband_search(self, resources, codebook, subband_info, pmi, info, noise_variance):
        cb = self.codebook_config
        n1, n2, _, _ = self._panel()
        num_layers = info.W.shape[1]
        W1 = info.wb_info["W1"]

        ev = self._subband_eigenvectors(
            resources, subband_info, info.wb_info["eigenvectors"], num_layers
        )
        invalid = np.array([np.all(ev[sb] == 0) or np.all(np.isnan(ev[sb]))
                            for sb in range(subband_info.num_subbands)])
        ev[invalid] = np.nan
        W2 = np.einsum("pb,spl->bls", np.conj(W1), ev) / (n1 * n2)

        W2q, p1p2, p2, c = quantize_type2_subband(
            W2,
            info.wb_info["wideband_amplitudes"],
            info.wb_info["wideband_p1"],
            info.wb_info["istar"],
            cb.phase_alphabet_size,
            cb.subband_amplitude,
            invalid,
        )
        with np.errstate(divide="ignore", invalid="ignore"):
            norm = 1 / np.sqrt(num_layers * n1 * n2 * np.sum(p1p2 ** 2, axis=0))
            W = np.einsum("pb,bls->pls", W1, W2q) * norm[None]

        if cb.subband_amplitude:
            i22 = np.full(p2.shape, np.nan)
            for sb in range(subband_info.num_subbands):
                for layer in range(num_layers):
                    column = p2[:, layer, sb]
                    if not np.all(np.isnan(column)):
                        i22[:, layer, sb] = np.where(column == 1, 2, 1)
            # Per layer: [c_l, i22_l]
            i2 = np.stack([c, i22], axis=2).reshape(c.shape[0], 2 * num_layers, -1)
        else:
            i2 = c

        sinr_per_re_pmi, sinr_per_subband = self._subband_sinr(
            resources, subband_info, W, noise_variance
        )
        info = PMIInfo(
            W=W,
            sinr_per_re_pmi=sinr_per_re_pmi,
            sinr_per_subband=sinr_per_subband,
            csirs_k=resources.k,
            csirs_l=resources.l,
            wb_info=info.wb_info,
        )
        return PMISet(i1=pmi.i1, i2=i2.astype(float)), info


def enhanced_type2_indices(n3_count: int, mv: int, group: Tuple[int, int, int],
                           quant: EnhancedTypeIIQuantization, minit: int,
                           n3: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assemble enhanced Type II i1 and i2

    Args:
        n3_count: Number of PMI subbands N3
        mv: Number of DFT basis vectors per layer
        group: 1-based (q1, q2, i12)
        quant: Quantized coefficients
        minit: DFT window offset
        n3: 0-based selected basis indices (Mv, layers), strongest first

    Returns:
        (i1, i2) with i2 of shape (1, layers*(2 + 4*L*Mv))
    """
    num_layers = n3.shape[1]
    num_coeffs = quant.k2.shape[0]

    i23 = quant.k1.reshape(2, num_layers)
    k2 = quant.k2.copy()
    k3 = ~np.isnan(quant.k2)
    c = quant.c.copy()

    # The strongest basis becomes f = 0
    for layer in range(num_layers):
        shift = -int(quant.fstar[layer])
        k2[:, :, layer] = np.roll(k2[:, :, layer], shift, axis=1)
        k3[:, :, layer] = np.roll(k3[:, :, layer], shift, axis=1)
        c[:, :, layer] = np.roll(c[:, :, layer], shift, axis=1)

    i24 = k2.reshape(num_coeffs * mv, num_layers, order="F")
    i25 = c.reshape(num_coeffs * mv, num_layers, order="F")
    i2 = np.concatenate([i23, i24, i25], axis=0).reshape(1, -1, order="F")

    if n3_count <= MAX_SUBBANDS_FULL_SEARCH:
        i15 = 0
    else:
        i15 = minit + 2 * mv * (minit < 0)
    i16 = combinatorial_index(n3, n3_count, mv, i15)
    i17 = k3.reshape(num_coeffs * mv, num_layers, order="F").astype(float)

    if num_layers == 1:
        i18 = np.array([np.sum(k3[:quant.istar[0] + 1, 0, 0]) - 1])
    else:
        i18 = quant.istar + 1

    per_layer = np.concatenate([i16[None], i17, i18[None]], axis=0)
    i1 = np.concatenate([np.array(list(group) + [i15], dtype=float),
                         per_layer.ravel(order="F").astype(float)])
    return i1, i2.astype(float)


class EnhancedTypeIIStrategy(_TypeIIFamilyStrategy):
    """Rel-16 enhanced Type II codebook with DFT-domain compression"""

    @property
    def codebook_config(self) -> EnhancedTypeIIConfig:
        return self.config.codebook

    def _num_beams(self, num_layers):
        return self.codebook_config.parameters(num_layers)[0]

    def num_basis_vectors(self, num_layers: int, num_subbands: int) -> int:
        """Mv = ceil(pv*N3/R)"""
        _, pv, _ = self.codebook_config.parameters(num_layers)
        r = self.codebook_config.pmi_subbands_per_cqi_subband
        return int(np.ceil(pv * num_subbands / r))

    def nan_result(self, subband_info, num_ports, num_layers, resources, codebook):
        num_sb = subband_info.num_subbands
        num_beams = self._num_beams(num_layers)
        mv = self.num_basis_vectors(num_layers, num_sb)
        k, l = self._coords(resources)
        pmi = PMISet(
            i1=np.full(4 + (2 + 2 * num_beams * mv) * num_layers, np.nan),
            i2=np.full((1, num_layers * (2 + 4 * num_beams * mv), num_sb), np.nan),
        )
        info = PMIInfo(
            W=np.full((num_ports, num_layers, num_sb), np.nan),
            sinr_per_re_pmi=np.full((self._num_re(resources), num_layers), np.nan),
            sinr_per_subband=np.full((num_sb, num_layers), np.nan),
            csirs_k=k,
            csirs_l=l,
        )
        return pmi, info

    def _quantize_wideband(self, W2, max_amps, num_layers):
        n1, n2, _, _ = self._panel()
        _, _, beta = self.codebook_config.parameters(num_layers)
        quant = quantize_enhanced_type2(W2[:, None, :], beta, max_amps)
        W2q = quant.W2[:, 0, :]
        with np.errstate(divide="ignore"):
            norm = 1 / np.sqrt(num_layers * n1 * n2 * np.sum(np.abs(W2q) ** 2, axis=0))
        return W2q, norm

    def _wideband_indices(self, W2, max_amps, group, wb_info):
        num_layers = W2.shape[1]
        _, _, beta = self.codebook_config.parameters(num_layers)
        quant = quantize_enhanced_type2(W2[:, None, :], beta, max_amps)
        i1, i2 = enhanced_type2_indices(1, 1, group, quant, 0,
                                        np.zeros((1, num_layers), dtype=int))
        wb_info["istar"] = quant.istar
        return i1, i2[:, :, None]

    def subband_search(self, resources, codebook, subband_info, pmi, info, noise_variance):
        n1, n2, _, _ = self._panel()
        num_layers = info.W.shape[1]
        num_sb = subband_info.num_subbands
        _, _, beta = self.codebook_config.parameters(num_layers)
        W1 = info.wb_info["W1"]

        ev = self._subband_eigenvectors(
            resources, subband_info, info.wb_info["eigenvectors"], num_layers
        )
        ev = np.nan_to_num(ev)
        W2 = np.einsum("pb,spl->bls", np.conj(W1), ev) / (n1 * n2)

        mv = self.num_basis_vectors(num_layers, num_sb)
        W2c, minit, n3, Vm = compress_enhanced_type2(W2, info.wb_info["istar"], mv)
        quant = quantize_enhanced_type2(W2c, beta, info.wb_info["restricted_amplitudes"])

        W2q = np.einsum("bml,nml->bnl", quant.W2, Vm)          # (2L, N3, layers)
        gamma = np.sum(np.abs(W2q) ** 2, axis=0)                # (N3, layers)
        with np.errstate(divide="ignore", invalid="ignore"):
            Wt = np.einsum("pb,bnl->pnl", W1, W2q) / np.sqrt(num_layers * gamma * n1 * n2)
        W = Wt.transpose(0, 2, 1)                               # (P, layers, N3)

        group = tuple(int(v) for v in pmi.i1[:3])
        i1, i2 = enhanced_type2_indices(num_sb, mv, group, quant, minit, n3)
        # One i2 for the whole band, repeated per subband to keep the report shape
        i2 = np.repeat(i2[:, :, None], num_sb, axis=2)

        sinr_per_re_pmi, sinr_per_subband = self._subband_sinr(
            resources, subband_info, W, noise_variance
        )
        wb_info = dict(info.wb_info, minit=minit, n3=n3)
        info = PMIInfo(
            W=W,
            sinr_per_re_pmi=sinr_per_re_pmi,
            sinr_per_subband=sinr_per_subband,
            csirs_k=resources.k,
            csirs_l=resources.l,
            wb_info=wb_info,
        )
        return PMISet(i1=i1, i2=i2), info


_STRATEGIES = {
    CodebookType.TYPE_I_SINGLE_PANEL: TypeISinglePanelStrategy,
    CodebookType.TYPE_I_MULTI_PANEL: TypeIMultiPanelStrategy,
    CodebookType.TYPE_II: TypeIIStrategy,
    CodebookType.ENHANCED_TYPE_II: EnhancedTypeIIStrategy,
}


# =============================================================================
# Facade
# =============================================================================

class PMISelector:
    """
    PMI selection entry point

    Stateless per call apart from cached Type I codebooks. Degenerate
    inputs (no CSI-RS in the BWP, an all-NaN channel, a fully restricted
    Type I codebook, no finite Type II precoder) produce the NaN sentinel
    rather than an exception.
    """

    def __init__(self, config: CSIReportConfig, carrier: Optional[CarrierConfig] = None,
                 evaluator: Optional[SINREvaluator] = None):
        self.config = config
        self.carrier = carrier or CarrierConfig()
        self.evaluator = evaluator or SINREvaluator()
        self.strategy = _STRATEGIES[config.codebook_type](config, self.evaluator)

    def nan_result(self, num_ports: int, num_layers: int) -> Tuple[PMISet, PMIInfo]:
        """No-report sentinel for the configured family"""
        subband_info = get_pmi_subband_info(self.config)
        codebook = None
        if self.config.codebook_type in (CodebookType.TYPE_I_SINGLE_PANEL,
                                         CodebookType.TYPE_I_MULTI_PANEL):
            codebook = self.strategy.compute_codebook(num_ports, num_layers)
        return self.strategy.nan_result(subband_info, num_ports, num_layers, None, codebook)

    def select(
        self,
        H: np.ndarray,
        csirs_k: np.ndarray,
        csirs_l: np.ndarray,
        num_layers: int,
        noise_variance: float = MIN_NOISE_VARIANCE,
    ) -> Tuple[PMISet, PMIInfo]:
        """
        Select the PMI for a number of layers

        Args:
            H: Channel estimate (K, L, nRx, P) spanning the carrier grid
            csirs_k: 0-based carrier subcarriers of the CSI-RS REs
            csirs_l: 0-based OFDM symbols of the CSI-RS REs
            num_layers: Transmission rank
            noise_variance: Noise variance, floored at 1e-10

        Returns:
            (PMISet, PMIInfo)

        Raises:
            CSIConfigurationError: on an inconsistent configuration
            ValueError: on a malformed channel tensor
        """
        H = np.asarray(H)
        if H.ndim != 4:
            raise ValueError(f"Channel estimate must be K x L x nRx x P, got shape {H.shape}")
        num_rx, num_ports = H.shape[2], H.shape[3]
        self.config.validate(self.carrier, num_ports, num_layers, num_rx)
        noise_variance = max(float(noise_variance), MIN_NOISE_VARIANCE)

        strategy = self.strategy
        codebook = strategy.compute_codebook(num_ports, num_layers)
        subband_info = get_pmi_subband_info(self.config)
        resources = extract_csirs_resources(self.carrier, self.config, H, csirs_k, csirs_l)
        nan_pmi, nan_info = strategy.nan_result(
            subband_info, num_ports, num_layers, resources, codebook
        )

        if resources.is_empty:
            logger.warning("No CSI-RS in the BWP or all-NaN channel, reporting no PMI")
            return nan_pmi, nan_info
        if codebook is not None and codebook.is_fully_restricted:
            logger.warning("Codebook fully restricted, reporting no PMI")
            return nan_pmi, nan_info

        result = strategy.wideband_search(resources, codebook, num_layers, noise_variance)
        if result is None:
            return nan_pmi, nan_info
        pmi, info = result

        if strategy.needs_subband_stage(subband_info):
            pmi, info = strategy.subband_search(
                resources, codebook, subband_info, pmi, info, noise_variance
            )
        return pmi, info
