#!/usr/bin/env python3
"""
Local entrypoint: serves the projection API on 127.0.0.1:8000.

The application lives under `coinmax_app/`. Use `python3 server.py`.
"""

from coinmax_app.main import app, run


if __name__ == "__main__":
    run()
