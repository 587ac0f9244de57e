from __future__ import annotations

import argparse
import dataclasses
import logging

from .app import create_runtime_app
from .config import RuntimeSettings


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the form runtime preview service")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--ai-endpoint", default=None, help="override FORM_RUNTIME_AI_ENDPOINT")
    args = parser.parse_args()

    settings = RuntimeSettings.from_env()
    if args.ai_endpoint:
        settings = dataclasses.replace(settings, ai_endpoint=args.ai_endpoint)

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    app = create_runtime_app(settings)
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
