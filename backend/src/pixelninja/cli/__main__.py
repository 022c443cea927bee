"""CLI entry point for pixelninja.cli module.

Enables execution via:
    python -m pixelninja.cli backfill [OPTIONS]
    python -m pixelninja.cli commit [OPTIONS]
"""

import sys

from pixelninja.cli import backfill, commit

COMMANDS = {
    "backfill": backfill.main,
    "commit": commit.main,
}


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] not in COMMANDS:
        print(f"usage: python -m pixelninja.cli {{{','.join(COMMANDS)}}} [OPTIONS]", file=sys.stderr)
        return 1
    return COMMANDS[argv[0]](argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
