#!/usr/bin/env python3
"""
Ingestion service entry point.

Polls the capture source on a fixed interval, persists each event to the
keyword store and feeds the vector indexer. Optionally serves the search API
from the same process.
"""

import argparse
import signal
import sys
import threading

from screenmem.core.config import (
    API_HOST,
    API_PORT,
    POLL_INTERVAL_SEC,
    debug_enabled,
    ensure_data_directories,
    validate_config,
)
from screenmem.core.errors import CaptureSourceError, StartupError
from screenmem.core.orchestrator import IngestionOrchestrator
from screenmem.util.logging import logger


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Screen-capture memory ingestion service")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument("--serve", action="store_true", help="Also serve the search API")
    parser.add_argument("--host", default=API_HOST, help="Search API bind address")
    parser.add_argument("--port", type=int, default=API_PORT, help="Search API port")
    parser.add_argument("--test-connection", action="store_true",
                        help="Check the capture source and exit")
    return parser.parse_args(argv)


def start_api_server(orchestrator: IngestionOrchestrator, host: str, port: int) -> threading.Thread:
    import uvicorn
    from screenmem.api.main import create_app

    server = uvicorn.Server(uvicorn.Config(create_app(orchestrator), host=host, port=port, log_level="info"))
    # Signals are handled by the ingestion loop, not by uvicorn
    server.install_signal_handlers = lambda: None
    thread = threading.Thread(target=server.run, name="search-api", daemon=True)
    thread.start()
    logger.info(f"Search API listening on http://{host}:{port}")
    return thread


def main(argv=None) -> int:
    args = parse_args(argv)
    logger.set_debug(debug_enabled())

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"❌ Config issue: {issue}")
        return 1

    try:
        ensure_data_directories()
        orchestrator = IngestionOrchestrator.from_config()

        if args.test_connection:
            result = orchestrator.capture_client.test_connection()
            print(f"{'✓' if result['healthy'] else '❌'} Capture source: {result}")
            return 0 if result["healthy"] else 1

        orchestrator.initialize()
    except (StartupError, OSError) as e:
        print(f"❌ Startup failed: {e}")
        return 1

    def handle_signal(signum, frame):
        print(f"\n🛑 Received signal {signum}, stopping after the current cycle...")
        orchestrator.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if args.serve:
        start_api_server(orchestrator, args.host, args.port)

    print(f"🚀 Ingesting every {POLL_INTERVAL_SEC}s (Ctrl+C to stop)")
    exit_code = 0
    try:
        if args.once:
            try:
                summary = orchestrator.run_cycle()
                print(f"✓ Processed {summary.total} events: {summary.per_app}")
            except CaptureSourceError as e:
                print(f"❌ Capture source unavailable: {e}")
                exit_code = 1
        else:
            orchestrator.run_forever()
    finally:
        orchestrator.shutdown()
        print("🏁 Ingestion stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
