"""Allow ``python -m drone_relay`` to launch the bridge."""

from __future__ import annotations

from .app.master import run


if __name__ == "__main__":
    raise SystemExit(run())
