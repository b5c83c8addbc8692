"""fedwatch CLI entry point.

Delegates to ``fedwatch.cli`` which houses all Click commands.
Kept minimal so that ``python -m fedwatch`` and the ``fedwatch``
console-script entry point both resolve here.
"""

from __future__ import annotations

from fedwatch.cli import cli


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
