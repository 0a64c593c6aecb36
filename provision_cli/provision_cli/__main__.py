"""Entry point for `python -m provision_cli` and the `provision` console script."""

from __future__ import annotations

from provision_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
