"""Entry point for `python -m revenue_cli` and the `revenue` console script."""

from __future__ import annotations

from revenue_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
