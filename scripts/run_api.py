#!/usr/bin/env python3
"""CLI entry point for the training JSON API.

Usage:
    python scripts/run_api.py --db playbook.db --port 5000

Starts a Flask development server exposing the training endpoints. Stuck
runs are recovered once at startup and then periodically.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

load_dotenv(override=True)


def main():
    parser = argparse.ArgumentParser(
        description="Run the playbook training API"
    )
    parser.add_argument(
        "--db",
        type=str,
        default="playbook.db",
        help="Path to the SQLite database file (default: playbook.db)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="Port to run the server on (default: 5000)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1, use 0.0.0.0 for external access)",
    )
    parser.add_argument(
        "--recovery-interval",
        type=float,
        default=60.0,
        help="Seconds between recovery scans, 0 to disable (default: 60)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Flask debug mode with auto-reload",
    )
    parser.add_argument(
        "--mock-llm",
        action="store_true",
        help="Use mock LLM client (for testing)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    from src.db.repo import Repository
    from src.training.config import RecoveryConfig
    from src.training.recovery import RecoverySupervisor
    from src.training.service import client_pipeline_factory
    from src.web.app import init_app

    if args.mock_llm:
        from src.agents.client import MockGeminiClient
        llm_client = MockGeminiClient()
    else:
        from src.agents.client import GeminiClient, GeminiConfig
        llm_client = GeminiClient(GeminiConfig())

    recovery_config = RecoveryConfig.from_env()
    app = init_app(
        args.db,
        pipeline_factory=client_pipeline_factory(llm_client),
        recovery_config=recovery_config,
    )

    # Creates the schema if needed and recovers runs left by a previous process
    repo = Repository(args.db)
    repo.connect()
    supervisor = RecoverySupervisor(repo, recovery_config)
    supervisor.recover_all()
    if args.recovery_interval > 0:
        supervisor.start_periodic(args.recovery_interval)

    print(f"Starting training API for database: {args.db}")
    print(f"Server running at http://{args.host}:{args.port}")
    print("Press Ctrl+C to stop")

    try:
        app.run(
            host=args.host,
            port=args.port,
            debug=args.debug,
            use_reloader=False,
        )
    finally:
        supervisor.stop_periodic()
        repo.close()


if __name__ == "__main__":
    main()
