"""
Tech Records Import Service — Main Entry Point
==============================================
Starts the Flask-based import service.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --db jobs.sqlite   # Custom job store
"""

import argparse
import logging

from techrecords import storage
from techrecords.database import get_db_path
from techrecords.server import create_app

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Tech Records Import Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--db", default=None, help="Job store path")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    storage.init_storage()
    app = create_app({"DB_PATH": args.db})

    logger.info(f"Job store: {args.db or get_db_path()}")
    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
