"""Application entry point."""

from __future__ import annotations

import logging
import sys
from typing import Sequence

from tunnelgate.cli.app import App, build_parser
from tunnelgate.core.config import load_settings
from tunnelgate.core.errors import AppError
from tunnelgate.core.logging_setup import setup_logging
from tunnelgate.core.storage import ensure_dirs

logger = logging.getLogger(__name__)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    ensure_dirs()
    setup_logging()
    try:
        settings = load_settings()
    except AppError as exc:
        print(exc.user_message, file=sys.stderr)
        return 2

    app = App.from_settings(settings)
    try:
        app.resume_session()
        return app.dispatch(args)
    except AppError as exc:
        logger.warning("Command %s failed: %s", args.command, exc)
        print(exc.user_message, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        app.close()


if __name__ == "__main__":
    raise SystemExit(main())
