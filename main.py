# main.py
"""CLI entry point for the TaleTrail orchestrator."""

from __future__ import annotations

import argparse
import sys

from orchestration.cli_runner import run


def main() -> None:
    """Parse command-line arguments and run one generation request."""
    parser = argparse.ArgumentParser(description="Generate a TaleTrail story trail")
    parser.add_argument(
        "--request", required=True, help="Path to a YAML or JSON generation request"
    )
    parser.add_argument("--gateway", default=None, help="Message bus gateway URL")
    parser.add_argument(
        "--max-rounds", type=int, default=None, help="Override the negotiation round limit"
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the full result envelope as JSON"
    )
    args = parser.parse_args()
    sys.exit(run(args.request, args.gateway, args.max_rounds, args.json))


if __name__ == "__main__":
    main()
