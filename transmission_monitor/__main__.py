import argparse
import asyncio
import logging
import os
import sys

# Allows running the package directory directly (e.g. `uv run transmission_monitor`)
# by putting the project root on the path before the absolute imports below.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    sys.path.insert(0, os.path.dirname(script_dir))

from transmission_monitor import config, database, history, server

log = logging.getLogger("TransmissionMonitor")


def main():
    parser = argparse.ArgumentParser(
        description="Transmission Monitor - collects transfer snapshots from a Transmission daemon "
                    "and serves them over REST and WebSocket",
        epilog="""
Examples:
  # Collect from the local daemon and serve on port 3000
  %(prog)s

  # Remote daemon, custom database location
  %(prog)s --transmission-url http://nas:9091/transmission/rpc --db-path /var/lib/tm/snapshots.db

  # Follow a running monitor from a terminal
  %(prog)s --watch http://localhost:3000
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--watch',
        metavar='MONITOR_URL',
        help="WATCH MODE: follow a running monitor (history fetch + live stream) and log its throughput."
    )
    parser.add_argument('--transmission-url', default=config.TRANSMISSION_URL,
                        help=f"Transmission RPC endpoint (default: {config.TRANSMISSION_URL})")
    parser.add_argument('--db-path', default=config.DATABASE_FILE,
                        help=f"SQLite snapshot database (default: {config.DATABASE_FILE})")
    parser.add_argument('--host', default=config.SERVER_HOST, help="Address to bind the HTTP server to.")
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help="Port of the HTTP server.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    if args.watch:
        try:
            asyncio.run(history.watch(args.watch))
        except KeyboardInterrupt:
            log.info("Watch mode stopped.")
        sys.exit(0)

    try:
        database.init_db(args.db_path)
    except Exception:
        log.critical(f"Cannot open the snapshot database at '{args.db_path}'.", exc_info=True)
        sys.exit(1)

    server.run_server(host=args.host, port=args.port, db_path=args.db_path,
                      transmission_url=args.transmission_url)


if __name__ == "__main__":
    main()
