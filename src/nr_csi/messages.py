"""
CSI Request/Report Message Definitions

Defines message formats for the REST interface:
- CSIRequest: channel estimate, noise variance and CSI-RS REs of one UE
- CSIReport: RI, PMI and CQI computed for one scheduling opportunity
- Complex array encoding as {"real": [...], "imag": [...]}

NaN values travel as JSON null.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np

logger = logging.getLogger(__name__)


# =============================================================================
# Array Encoding
# =============================================================================

def encode_complex(values: np.ndarray) -> Dict[str, Any]:
    """Split a complex array into nested real and imaginary lists"""
    values = np.asarray(values)
    return {
        "real": np.real(values).tolist(),
        "imag": np.imag(values).tolist(),
    }


def decode_complex(data: Any) -> np.ndarray:
    """
    Rebuild a complex array

    Accepts the {"real", "imag"} form or a plain (real-valued) nested list.
    None entries decode to NaN.
    """
    if isinstance(data, dict):
        if "real" not in data:
            raise ValueError("Complex array needs a 'real' field")
        real = np.array(data["real"], dtype=float)
        imag = np.array(data.get("imag", np.zeros(real.shape).tolist()), dtype=float)
        if real.shape != imag.shape:
            raise ValueError(
                f"Real and imaginary parts differ in shape: {real.shape} vs {imag.shape}"
            )
        return real + 1j * imag
    return np.array(data, dtype=float).astype(complex)


def encode_array(values: np.ndarray) -> Any:
    """Real array to nested lists with NaN as None"""
    values = np.asarray(values, dtype=float)
    if values.ndim == 0:
        return None if np.isnan(values) else float(values)
    return np.where(np.isnan(values), None, values).tolist()


def decode_array(data: Any) -> np.ndarray:
    """Nested lists with None entries back to a float array"""
    return np.array(data, dtype=float)


# =============================================================================
# Request
# =============================================================================

@dataclass
class CSIRequest:
    """
    CSI computation request for one UE

    The channel spans the whole carrier grid: (K, L, nRx, P) with K the
    number of subcarriers and L the OFDM symbols of the slot.
    """
    ue_id: str
    H: np.ndarray                           # (K, L, nRx, P) complex
    csirs_k: np.ndarray                     # 0-based carrier subcarriers
    csirs_l: np.ndarray                     # 0-based OFDM symbols
    noise_variance: float = 1e-10
    timestamp_ms: float = field(default_factory=lambda: time.time() * 1000)
    num_layers: Optional[int] = None        # required by /csi/pmi and /csi/cqi
    algorithm: Optional[str] = None         # "max_sinr" or "max_se"
    sinr_table: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ue_id": self.ue_id,
            "timestamp_ms": self.timestamp_ms,
            "H": encode_complex(self.H),
            "csirs_k": np.asarray(self.csirs_k, dtype=int).tolist(),
            "csirs_l": np.asarray(self.csirs_l, dtype=int).tolist(),
            "noise_variance": self.noise_variance,
            "num_layers": self.num_layers,
            "algorithm": self.algorithm,
            "sinr_table": self.sinr_table,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CSIRequest":
        """
        Build a request from its dict form

        Raises:
            ValueError: on missing fields or malformed arrays
        """
        for key in ("H", "csirs_k", "csirs_l"):
            if key not in data:
                raise ValueError(f"Missing field '{key}'")
        H = decode_complex(data["H"])
        if H.ndim != 4:
            raise ValueError(f"H must be K x L x nRx x P, got shape {H.shape}")
        csirs_k = np.asarray(data["csirs_k"], dtype=int).ravel()
        csirs_l = np.asarray(data["csirs_l"], dtype=int).ravel()
        if csirs_k.shape != csirs_l.shape:
            raise ValueError("csirs_k and csirs_l must have the same length")

        num_layers = data.get("num_layers")
        return cls(
            ue_id=str(data.get("ue_id", "ue-0")),
            H=H,
            csirs_k=csirs_k,
            csirs_l=csirs_l,
            noise_variance=float(data.get("noise_variance", 1e-10)),
            timestamp_ms=data.get("timestamp_ms", time.time() * 1000),
            num_layers=int(num_layers) if num_layers is not None else None,
            algorithm=data.get("algorithm"),
            sinr_table=data.get("sinr_table"),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "CSIRequest":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))


# =============================================================================
# Report
# =============================================================================

@dataclass
class CSIReport:
    """RI/PMI/CQI report; missing quantities are None"""
    ue_id: str
    timestamp_ms: float
    ri: Optional[int] = None
    pmi: Optional[Dict[str, Any]] = None
    cqi: Optional[List[List[Optional[float]]]] = None
    num_layers: Optional[int] = None
    wideband_sinr_db: Optional[List[Optional[float]]] = None
    processing_time_ms: float = 0.0

    @property
    def has_report(self) -> bool:
        return self.pmi is not None and bool(self.pmi.get("valid"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ue_id": self.ue_id,
            "timestamp_ms": self.timestamp_ms,
            "ri": self.ri,
            "pmi": self.pmi,
            "cqi": self.cqi,
            "num_layers": self.num_layers,
            "wideband_sinr_db": self.wideband_sinr_db,
            "processing_time_ms": self.processing_time_ms,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "CSIReport":
        """Deserialize from JSON string"""
        return cls(**json.loads(json_str))


def create_csi_request(
    ue_id: str,
    H: np.ndarray,
    csirs_k: np.ndarray,
    csirs_l: np.ndarray,
    noise_variance: float = 1e-10,
    **kwargs
) -> CSIRequest:
    """Helper to create a CSIRequest"""
    return CSIRequest(
        ue_id=ue_id,
        H=np.asarray(H),
        csirs_k=np.asarray(csirs_k),
        csirs_l=np.asarray(csirs_l),
        noise_variance=noise_variance,
        **kwargs
    )
