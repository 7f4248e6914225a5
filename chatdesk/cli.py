import argparse
import os

import uvicorn

from chatdesk import config


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the ChatDesk HTTP/WebSocket server")
    parser.add_argument("--host", default=config.HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=config.PORT, help="Bind port")
    parser.add_argument("--db", default=None, help=f"SQLite path, ':memory:' allowed (default: {config.DB_PATH})")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="uvicorn log level",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    args = parser.parse_args()

    if args.db:
        # The reload worker re-reads config from the environment
        os.environ["CHATDESK_DB"] = args.db
        config.DB_PATH = args.db

    uvicorn.run(
        "chatdesk.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
