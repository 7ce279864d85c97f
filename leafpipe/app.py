import argparse
import logging
import signal
import sys
import threading

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS

from leafpipe import __version__
from leafpipe.config import load_config, save_token
from leafpipe.errors import AuthError, LeafpipeError
from leafpipe.routes.status import status_bp
from leafpipe.services.capture import create_source, list_devices
from leafpipe.services.nanoleaf import NanoleafClient, discover
from leafpipe.services.pipeline import Pipeline

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"


def create_app(pipeline=None):
    """Flask app exposing read-only health and pipeline status."""
    app = Flask(__name__)
    CORS(app)
    app.config["PIPELINE"] = pipeline
    app.register_blueprint(status_bp)
    return app


def _serve_status(app, port):
    thread = threading.Thread(
        target=app.run,
        kwargs={"host": "0.0.0.0", "port": port, "use_reloader": False, "threaded": True},
        name="leafpipe-status",
        daemon=True,
    )
    thread.start()
    logger.info("Status API on port %d", port)
    return thread


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="leafpipe",
        description="Drive Nanoleaf panels from live system audio.",
    )
    parser.add_argument("--config", "-c", help="path to config.toml")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    parser.add_argument("--list-devices", action="store_true",
                        help="list audio input devices and exit")
    parser.add_argument("--pair", action="store_true",
                        help="request an auth token from a panel in pairing mode and store it")
    parser.add_argument("--intensity", type=int, metavar="PERCENT",
                        help="maximum panel brightness, 0-100")
    parser.add_argument("--source", help="audio source name (overrides audio_source)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _resolve_host(config):
    if config.nanoleaf_host:
        return config.nanoleaf_host, config.nanoleaf_port
    logger.info("No nanoleaf_host configured, searching the LAN")
    found = discover(timeout=config.discovery_timeout_s)
    if found is None:
        raise AuthError("No Nanoleaf controller found; set nanoleaf_host")
    return found


def _print_devices():
    devices = list_devices()
    if not devices:
        print("No audio input devices found")
        return
    for idx, name, channels, rate in devices:
        print(f"{idx:>3}  {name}  ({channels} ch, {rate:.0f} Hz)")


def _pair(config):
    host, port = _resolve_host(config)
    token = NanoleafClient.pair(host, port, timeout=config.discovery_timeout_s)
    path = save_token(token)
    print(f"Paired with {host}; token stored in {path}")


def main(argv=None):
    args = parse_args(argv)
    load_dotenv()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    overrides = {"audio_source": args.source}
    if args.intensity is not None:
        overrides["brightness_ceiling"] = args.intensity / 100.0

    try:
        config = load_config(args.config, overrides=overrides)
        if not args.verbose:
            logging.getLogger().setLevel(config.log_level.upper())

        if args.list_devices:
            _print_devices()
            return 0
        if args.pair:
            _pair(config)
            return 0

        host, port = _resolve_host(config)
    except LeafpipeError as exc:
        logger.error("%s", exc)
        return exc.exit_code

    client = NanoleafClient(
        host,
        config.nanoleaf_token,
        port=port,
        transport=config.transport,
        timeout=config.request_timeout_s,
    )
    pipeline = Pipeline(config, create_source(config), client)

    def handle_signal(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        pipeline.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if config.status_port:
        _serve_status(create_app(pipeline), config.status_port)

    try:
        pipeline.start()
        pipeline.run()
    except LeafpipeError as exc:
        logger.error("%s", exc)
        return exc.exit_code
    except Exception:
        logger.exception("Unexpected failure")
        return 1
    finally:
        pipeline.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
