#!/usr/bin/env python3
"""
Local entrypoint for the valuation HTTP service.

Set CHATSTOCK_CONFIG (or put it in .env) to load regimes from YAML,
otherwise the built-in legacy/diminishing regimes are served.
"""

from chatstock_valuation.main import run


if __name__ == "__main__":
    run()
