"""
qextract Service Entry Point
============================
Starts the Flask service with deployment settings taken from the command
line, falling back to the environment.

Usage:
    python main.py                              # 0.0.0.0:5000, QEXTRACT_DB_PATH
    python main.py --db /data/questions.sqlite  # Explicit database
    python main.py --upload-dir /tmp/uploads    # Where uploaded PDFs are staged
    python main.py --output-dir runs/           # Keep each run's JSON
"""

import argparse
import logging

from qextract.database import get_db_path
from qextract.server import app, create_app

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="qextract service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    parser.add_argument(
        "--db", default=None,
        help="SQLite database path (default: QEXTRACT_DB_PATH or ./database.sqlite)",
    )
    parser.add_argument(
        "--upload-dir", default=None, help="Directory for staged uploads",
    )
    parser.add_argument(
        "--output-dir", default=None, help="Directory for run JSON files",
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser.parse_args(argv)


def app_config(args: argparse.Namespace) -> dict:
    """Flask config overrides for the parsed arguments."""
    config = {"DB_PATH": args.db or get_db_path()}
    if args.upload_dir:
        config["UPLOAD_DIR"] = args.upload_dir
    if args.output_dir:
        config["OUTPUT_DIR"] = args.output_dir
    return config


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    create_app(app_config(args))
    logger.info(f"Database path: {app.config['DB_PATH']}")
    logger.info(f"Upload dir: {app.config['UPLOAD_DIR']}")
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
