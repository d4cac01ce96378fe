# main.py
"""CLI entry point for the MedGuard generation pipeline."""

from __future__ import annotations

import argparse

from models import RequestKind, UserRole
from orchestration.cli_runner import run


def main() -> None:
    """Parse command-line arguments and submit one request."""
    parser = argparse.ArgumentParser(description="Generate and validate content.")
    parser.add_argument("prompt", help="User prompt or question")
    parser.add_argument(
        "--kind",
        default=RequestKind.CHAT.value,
        choices=[k.value for k in RequestKind],
    )
    parser.add_argument(
        "--role",
        default=UserRole.STUDENT.value,
        choices=[r.value for r in UserRole],
    )
    parser.add_argument("--user-id", default="cli")
    parser.add_argument(
        "--context",
        action="append",
        default=None,
        help="Prior turn or document chunk; repeat to add more",
    )
    args = parser.parse_args()
    run(args.prompt, args.kind, args.role, args.user_id, args.context)


if __name__ == "__main__":
    main()
