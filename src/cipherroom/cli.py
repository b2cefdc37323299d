from __future__ import annotations

import argparse
import asyncio
import logging

import structlog

from .core.config import Settings
from .core.crypto import WireFormat, generate_session_key
from .core.errors import ProtocolError
from .relay.app import build_relay_app
from .protocol.client import ChatClient
from .protocol.selfcheck import security_self_check

def _configure_logger(settings: Settings):
    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level, logging.INFO)),
    )
    return structlog.get_logger()

def main(argv=None):
    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 2
    logger = _configure_logger(settings)

    parser = argparse.ArgumentParser(description="CipherRoom ephemeral encrypted group chat")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the relay server")
    serve_parser.add_argument("--host", default=settings.host)
    serve_parser.add_argument("--port", type=int, default=settings.port)

    client_parser = subparsers.add_parser("client", help="Run an interactive chat client")
    client_parser.add_argument("--url", default="ws://localhost:3001")
    client_parser.add_argument("--join", metavar="CODE", help="Join an existing session instead of creating one")
    client_parser.add_argument("--legacy", action="store_true", help="Send legacy-format payloads")

    subparsers.add_parser("gen-key", help="Generate a random session key")
    subparsers.add_parser("check", help="Run security self-check")

    args = parser.parse_args(argv)

    if args.command == "check":
        security_self_check(logger)
        print("✓ Security self-check passed")
        return 0

    if args.command == "gen-key":
        print(generate_session_key())
        return 0

    if args.command == "serve":
        security_self_check(logger)
        import uvicorn
        app = build_relay_app(logger, settings)
        logger.info("starting_relay", host=args.host, port=args.port)
        uvicorn.run(app, host=args.host, port=args.port, log_config=None)
        return 0

    if args.command == "client":
        security_self_check(logger)
        client = ChatClient(
            url=args.url,
            logger=logger,
            fmt=WireFormat.LEGACY if args.legacy else WireFormat.CURRENT,
            enforce_freshness=settings.enforce_freshness,
        )
        print("Commands: /rotate /end /leave. Ctrl+C to exit")

        try:
            asyncio.run(client.run(args.join))
        except KeyboardInterrupt:
            logger.info("client_shutdown", reason="keyboard_interrupt")
            print("\nShutting down...")
        except ProtocolError as e:
            logger.error("protocol_error", error=str(e))
            print(f"Protocol error: {e}")
            return 3
        except Exception as e:
            logger.error("unexpected_error", error=str(e))
            print(f"Unexpected error: {e}")
            return 4

    return 0

if __name__ == "__main__":
    raise SystemExit(main())
