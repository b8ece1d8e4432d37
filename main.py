"""Start the torrent media server."""

import argparse
import logging
import os
import sys

import web_server
from app_paths import ensure_dir, get_log_path, get_state_dir
from backends import create_backend
from config_manager import BACKENDS, ConfigManager
from ingestion import Ingestor

log = logging.getLogger("serrebistream")


def setup_logging(level):
    handlers = [logging.StreamHandler()]
    try:
        handlers.append(logging.FileHandler(get_log_path(), encoding="utf-8"))
    except OSError as e:
        print(f"File logging disabled: {e}", file=sys.stderr)
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Stream torrent downloads over HTTP")
    parser.add_argument("--host", help="Interface to listen on")
    parser.add_argument("--port", type=int, help="HTTP port")
    parser.add_argument("--backend", choices=BACKENDS, help="Torrent backend to use")
    parser.add_argument("--download-dir", help="Directory downloaded files are stored in")
    return parser.parse_args(argv)


def load_settings(args):
    settings = ConfigManager().get_settings()
    if args.host:
        settings["host"] = args.host
    if args.port:
        settings["port"] = args.port
    if args.backend:
        settings["backend"] = args.backend
    if args.download_dir:
        settings["download_dir"] = os.path.abspath(args.download_dir)
    return settings


def configure(settings):
    """Create the backend and hand it to the web layer."""
    ensure_dir(settings["download_dir"])
    backend = create_backend(settings)
    web_server.WEB_CONFIG.update({
        "backend": backend,
        "ingestor": Ingestor(
            backend,
            get_state_dir(),
            lookup_retries=settings["lookup_retries"],
            lookup_interval=settings["lookup_interval"],
        ),
        "host": settings["host"],
        "port": settings["port"],
    })
    return backend


def main(argv=None):
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    setup_logging(settings["log_level"])

    try:
        backend = configure(settings)
    except RuntimeError as e:
        log.error("Could not start the %s backend: %s", settings["backend"], e)
        return 1

    log.info("Backend: %s", backend.name)
    log.info("Downloads directory: %s", settings["download_dir"])
    try:
        web_server.run_server()
    finally:
        backend.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
