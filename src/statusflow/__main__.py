"""Module entrypoint for ``python -m statusflow``."""

from __future__ import annotations

from statusflow.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
