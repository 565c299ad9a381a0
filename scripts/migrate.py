"""Script to run database migrations."""

import argparse
import sys

from alembic import command
from alembic.config import Config

ALEMBIC_INI = "alembic.ini"


def main() -> int:
    """Upgrade to head by default, or create/downgrade revisions."""
    parser = argparse.ArgumentParser(description="Appointments schema migrations")
    sub = parser.add_subparsers(dest="action")
    sub.add_parser("upgrade", help="Upgrade to the latest revision (default)")
    create = sub.add_parser("create", help="Autogenerate a new revision")
    create.add_argument("message", nargs="+")
    down = sub.add_parser("downgrade", help="Downgrade to a revision")
    down.add_argument("revision", nargs="?", default="-1")
    args = parser.parse_args()

    alembic_cfg = Config(ALEMBIC_INI)
    try:
        if args.action == "create":
            command.revision(alembic_cfg, message=" ".join(args.message), autogenerate=True)
        elif args.action == "downgrade":
            command.downgrade(alembic_cfg, args.revision)
        else:
            command.upgrade(alembic_cfg, "head")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        return 1

    print("✓ Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
