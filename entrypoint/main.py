#!/usr/bin/env python3
"""Process entrypoint.

Exposes the wired Flask ``app`` for WSGI servers (``gunicorn entrypoint.main:app``)
and runs the development server when executed directly.
"""

from __future__ import annotations

import os
import sys

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from bookclub.startup.wiring import create_app  # noqa: E402

app = create_app()


def main() -> int:  # pragma: no cover
    host = os.getenv("BOOKCLUB_HOST", "0.0.0.0")
    port = int(os.getenv("BOOKCLUB_PORT", "8083"))
    app.run(host=host, port=port, use_reloader=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
