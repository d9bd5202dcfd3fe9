"""
NR CSI Feedback Service - Main Entry Point
"""

import logging
import argparse
from .config import CarrierConfig, CSIConfigurationError, CSIReportConfig
from .server import create_app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def carrier_size(value: str) -> int:
    """Carrier bandwidth in RBs, also used as the BWP size"""
    try:
        n_size_grid = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    try:
        CSIReportConfig(n_size_bwp=n_size_grid).validate(CarrierConfig(n_size_grid=n_size_grid))
    except CSIConfigurationError as e:
        raise argparse.ArgumentTypeError(str(e))
    return n_size_grid


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="5G NR CSI feedback (RI/PMI/CQI) service"
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=5002,
        help="Port to bind to (default: 5002)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="SINR evaluation threads (default: executor default)"
    )
    parser.add_argument(
        "--n-size-grid",
        type=carrier_size,
        default=52,
        help="Carrier bandwidth in RBs, 1..275 (default: 52)"
    )
    return parser


def main(argv=None):
    """Main entry point for the CSI feedback service"""
    args = build_parser().parse_args(argv)

    config = {
        "max_workers": args.max_workers,
        "carrier": {"n_size_grid": args.n_size_grid},
        "report": {"n_size_bwp": args.n_size_grid},
    }

    logger.info(f"Starting NR CSI feedback service on {args.host}:{args.port}")
    logger.info(f"Carrier: {args.n_size_grid} RBs, max_workers={args.max_workers}")

    app = create_app(config)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
