"""
NR CSI Feedback REST API Server

Exposes the RI/PMI/CQI engine over HTTP:
- Full CSI report (RI, then PMI and CQI at the selected rank)
- PMI, CQI and RI on their own
- Runtime report configuration, statistics and health

Channel estimates travel as {"real": [...], "imag": [...]} nested lists
of shape (K, L, nRx, P).
"""

import logging
import time
from dataclasses import asdict
from typing import Dict, Any, Optional

from flask import Flask, request, jsonify
import numpy as np

from .config import CarrierConfig, CSIReportConfig
from .cqi_selector import CQISelector
from .messages import CSIReport, CSIRequest, encode_array
from .pmi_selector import PMISelector
from .ri_selector import RIAlgorithm, RISelector
from .sinr import SINREvaluator, nanmean

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _sinr_db(sinr_per_re: np.ndarray):
    """Wideband per-layer SINR in dB"""
    if sinr_per_re.size == 0:
        return None
    with np.errstate(divide="ignore"):
        return encode_array(10 * np.log10(nanmean(sinr_per_re, axis=0)))


class CSIFeedbackApp:
    """
    CSI feedback service

    Integrates:
    - PMISelector: precoder search per codebook family
    - CQISelector: CQI from the selected precoder
    - RISelector: rank search over the allowed ranks
    """

    def __init__(
        self,
        report_config: Optional[CSIReportConfig] = None,
        carrier_config: Optional[CarrierConfig] = None,
        max_workers: Optional[int] = None,
        prg_seed: int = 0,
    ):
        self.report_config = report_config or CSIReportConfig()
        self.carrier_config = carrier_config or CarrierConfig()
        self.max_workers = max_workers
        self.prg_seed = prg_seed
        self.report_config.validate(self.carrier_config)
        self.evaluator = SINREvaluator(max_workers=max_workers)
        self._build_selectors()

        # Statistics
        self.stats = self._new_stats()

        logger.info(
            f"CSIFeedbackApp initialized ({self.report_config.codebook_type.value}, "
            f"BWP {self.report_config.n_size_bwp} RBs)"
        )

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            "requests_received": 0,
            "reports_generated": 0,
            "pmi_requests": 0,
            "cqi_requests": 0,
            "ri_requests": 0,
            "empty_reports": 0,
            "errors": 0,
            "total_processing_time_ms": 0.0,
            "start_time": time.time(),
        }

    def _build_selectors(self):
        self.pmi_selector = PMISelector(self.report_config, self.carrier_config, self.evaluator)
        self.cqi_selector = self._cqi_selector()
        self.ri_selector = RISelector(
            self.report_config,
            self.carrier_config,
            pmi_selector=self.pmi_selector,
            cqi_selector=self.cqi_selector,
        )

    def _cqi_selector(self, sinr_table=None) -> CQISelector:
        return CQISelector(
            self.report_config,
            self.carrier_config,
            pmi_selector=self.pmi_selector,
            sinr_table=sinr_table,
            prg_seed=self.prg_seed,
        )

    def _error(self, e: Exception, what: str) -> Dict[str, Any]:
        self.stats["errors"] += 1
        logger.error(f"Error processing {what}: {e}")
        return {
            "status": "error",
            "error": str(e),
            "code": 400 if isinstance(e, (ValueError, KeyError)) else 500,
        }

    # =========================================================================
    # Request Processing
    # =========================================================================

    def process_csi_report(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Compute RI, PMI and CQI

        Expected format:
        {
            "ue_id": "ue-001",
            "H": {"real": [...], "imag": [...]},   # K x L x nRx x P
            "csirs_k": [0, 12, ...],
            "csirs_l": [4, 4, ...],
            "noise_variance": 0.01,
            "algorithm": "max_sinr",               # optional
            "sinr_table": [...]                    # optional, 15 dB values
        }

        Returns:
            CSI report
        """
        self.stats["requests_received"] += 1
        start = time.perf_counter()

        try:
            req = CSIRequest.from_dict(data)
            algorithm = RIAlgorithm(req.algorithm) if req.algorithm else None
            ri_result = self.ri_selector.select(
                req.H, req.csirs_k, req.csirs_l, req.noise_variance, algorithm
            )

            cqi_selector = self.cqi_selector
            if req.sinr_table is not None:
                cqi_selector = self._cqi_selector(req.sinr_table)

            if ri_result.is_valid:
                rank = int(ri_result.ri)
                pmi, pmi_info = ri_result.pmi, ri_result.pmi_info
                cqi, _ = cqi_selector.cqi_for_pmi(pmi, pmi_info, rank, req.noise_variance)
                sinr_db = _sinr_db(pmi_info.sinr_per_re_pmi)
            else:
                rank = None
                cqi, _ = cqi_selector.nan_result(1)
                pmi = ri_result.pmi
                sinr_db = None
                self.stats["empty_reports"] += 1

            elapsed_ms = (time.perf_counter() - start) * 1000
            report = CSIReport(
                ue_id=req.ue_id,
                timestamp_ms=req.timestamp_ms,
                ri=rank,
                pmi=pmi.to_dict(),
                cqi=encode_array(cqi),
                num_layers=rank,
                wideband_sinr_db=sinr_db,
                processing_time_ms=elapsed_ms,
            )

            self.stats["reports_generated"] += 1
            self.stats["total_processing_time_ms"] += elapsed_ms
            logger.info(
                f"UE {req.ue_id}: RI={rank}, CQI={report.cqi[0] if report.cqi else None} "
                f"({elapsed_ms:.1f} ms)"
            )
            return {"status": "success", "report": report.to_dict()}

        except Exception as e:
            return self._error(e, "CSI report")

    def process_pmi(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """PMI for a given number of layers (default 1)"""
        self.stats["pmi_requests"] += 1
        try:
            req = CSIRequest.from_dict(data)
            num_layers = req.num_layers or 1
            pmi, info = self.pmi_selector.select(
                req.H, req.csirs_k, req.csirs_l, num_layers, req.noise_variance
            )
            return {
                "status": "success",
                "ue_id": req.ue_id,
                "num_layers": num_layers,
                "pmi": pmi.to_dict(),
                "wideband_sinr_db": _sinr_db(info.sinr_per_re_pmi),
                "sinr_per_subband": encode_array(info.sinr_per_subband),
            }
        except Exception as e:
            return self._error(e, "PMI request")

    def process_cqi(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """CQI (and its PMI) for a given number of layers (default 1)"""
        self.stats["cqi_requests"] += 1
        try:
            req = CSIRequest.from_dict(data)
            num_layers = req.num_layers or 1
            cqi_selector = self.cqi_selector
            if req.sinr_table is not None:
                cqi_selector = self._cqi_selector(req.sinr_table)
            cqi, pmi, cqi_info, _ = cqi_selector.select(
                req.H, req.csirs_k, req.csirs_l, num_layers, req.noise_variance
            )
            return {
                "status": "success",
                "ue_id": req.ue_id,
                "num_layers": num_layers,
                "cqi": encode_array(cqi),
                "pmi": pmi.to_dict(),
                "cqi_info": cqi_info.to_dict(),
            }
        except Exception as e:
            return self._error(e, "CQI request")

    def process_ri(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Rank and its PMI"""
        self.stats["ri_requests"] += 1
        try:
            req = CSIRequest.from_dict(data)
            algorithm = RIAlgorithm(req.algorithm) if req.algorithm else None
            result = self.ri_selector.select(
                req.H, req.csirs_k, req.csirs_l, req.noise_variance, algorithm
            )
            return {"status": "success", "ue_id": req.ue_id, **result.to_dict()}
        except Exception as e:
            return self._error(e, "RI request")

    # =========================================================================
    # Configuration and Statistics
    # =========================================================================

    def get_config(self) -> Dict[str, Any]:
        return {
            "report": self.report_config.to_dict(),
            "carrier": asdict(self.carrier_config),
            "max_workers": self.max_workers,
            "prg_seed": self.prg_seed,
        }

    def update_config(self, updates: Dict[str, Any]):
        """
        Replace the report and/or carrier configuration

        Raises:
            CSIConfigurationError: if the new configuration is invalid;
                the current one is kept
        """
        carrier = self.carrier_config
        if "carrier" in updates:
            carrier = CarrierConfig.from_dict({**asdict(carrier), **updates["carrier"]})
        report = self.report_config
        if "report" in updates:
            report = CSIReportConfig.from_dict({**report.to_dict(), **updates["report"]})
        report.validate(carrier)

        self.carrier_config = carrier
        self.report_config = report
        if "prg_seed" in updates:
            self.prg_seed = int(updates["prg_seed"])
        self._build_selectors()
        logger.info(f"Configuration updated: {report.codebook_type.value}")

    def get_statistics(self) -> Dict[str, Any]:
        """Get service statistics"""
        uptime = time.time() - self.stats["start_time"]
        reports = self.stats["reports_generated"]
        return {
            **self.stats,
            "uptime_seconds": uptime,
            "avg_processing_time_ms": (
                self.stats["total_processing_time_ms"] / reports if reports else 0.0
            ),
            "evaluator_stats": dict(self.evaluator.stats),
        }

    def reset(self):
        self.stats = self._new_stats()
        self.evaluator.stats = {key: 0 for key in self.evaluator.stats}


# Flask application
app = Flask(__name__)
csi_app: Optional[CSIFeedbackApp] = None


def get_csi_app() -> CSIFeedbackApp:
    """Get or create service instance"""
    global csi_app
    if csi_app is None:
        csi_app = CSIFeedbackApp()
    return csi_app


def _respond(result: Dict[str, Any]):
    if result["status"] == "success":
        return jsonify(result), 200
    code = result.pop("code", 500)
    return jsonify(result), code


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint"""
    instance = get_csi_app()
    return jsonify({
        "status": "healthy",
        "service": "nr-csi",
        "version": "0.1.0",
        "codebook_type": instance.report_config.codebook_type.value,
    })


@app.route('/csi/report', methods=['POST'])
def csi_report():
    """Full RI/PMI/CQI report"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400
    return _respond(get_csi_app().process_csi_report(request.get_json()))


@app.route('/csi/pmi', methods=['POST'])
def csi_pmi():
    """PMI for a given number of layers"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400
    return _respond(get_csi_app().process_pmi(request.get_json()))


@app.route('/csi/cqi', methods=['POST'])
def csi_cqi():
    """CQI for a given number of layers"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400
    return _respond(get_csi_app().process_cqi(request.get_json()))


@app.route('/csi/ri', methods=['POST'])
def csi_ri():
    """Rank selection"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400
    return _respond(get_csi_app().process_ri(request.get_json()))


@app.route('/statistics', methods=['GET'])
def statistics():
    """Get service statistics"""
    return jsonify(get_csi_app().get_statistics())


@app.route('/config', methods=['GET', 'PUT'])
def config():
    """Get or update the report configuration"""
    instance = get_csi_app()

    if request.method == 'GET':
        return jsonify(instance.get_config())

    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400

    try:
        instance.update_config(request.get_json())
    except ValueError as e:
        logger.error(f"Rejected configuration update: {e}")
        return jsonify({"status": "error", "error": str(e)}), 400

    return jsonify({
        "status": "success",
        "message": "Configuration updated",
        "config": instance.get_config(),
    })


@app.route('/reset', methods=['POST'])
def reset():
    """Reset service statistics"""
    get_csi_app().reset()
    return jsonify({"status": "success", "message": "Service state reset"})


def create_app(config: Optional[Dict] = None) -> Flask:
    """
    Create Flask application with optional configuration

    Keys: "report" (CSIReportConfig dict), "carrier" (CarrierConfig dict),
    "max_workers", "prg_seed".
    """
    global csi_app
    config = config or {}

    report_config = CSIReportConfig.from_dict(config["report"]) if "report" in config else None
    carrier_config = CarrierConfig.from_dict(config["carrier"]) if "carrier" in config else None

    csi_app = CSIFeedbackApp(
        report_config=report_config,
        carrier_config=carrier_config,
        max_workers=config.get("max_workers"),
        prg_seed=config.get("prg_seed", 0),
    )
    return app
