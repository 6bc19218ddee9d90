"""Script to launch the reply engine server."""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from reply_engine.config import load_config  # noqa: E402
from reply_engine.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the reply engine server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config (default: $REPLY_ENGINE_CONFIG or config/default.yaml)",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    log_level = str(cfg.get("server", {}).get("log_level", "info"))
    logging.basicConfig(level=log_level.upper())

    # One worker only: timers and conversation state live in this process.
    app = create_app(args.config)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
