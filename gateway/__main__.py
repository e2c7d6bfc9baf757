"""python -m gateway"""
import argparse

import uvicorn

from .config import load_settings
from .main import configure_logging, create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Live broadcast gateway")
    parser.add_argument("--host", help="Bind address (default: GATEWAY_HOST)")
    parser.add_argument("--port", type=int, help="Bind port (default: GATEWAY_PORT)")
    args = parser.parse_args()

    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
