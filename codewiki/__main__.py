"""Run the API server: ``python -m codewiki``."""

import argparse

import uvicorn
from dotenv import load_dotenv


def main() -> None:
    load_dotenv()

    from codewiki.config import get_settings
    from codewiki.server import configure_logging, create_app

    settings = get_settings()

    parser = argparse.ArgumentParser(description="CodeWiki ingestion and search API")
    parser.add_argument("--host", default=settings.host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    args = parser.parse_args()

    configure_logging(settings.log_level)

    if args.reload:
        uvicorn.run("codewiki.__main__:app_factory", host=args.host, port=args.port, reload=True, factory=True)
    else:
        uvicorn.run(create_app(settings), host=args.host, port=args.port)


def app_factory():
    from codewiki.server import create_app
    return create_app()


if __name__ == "__main__":
    main()
