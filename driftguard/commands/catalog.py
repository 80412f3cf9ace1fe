"""``driftguard catalog``: list the behavioral dimensions calibration can pick from."""
from __future__ import annotations

import json

from backend.app.core.catalog import DIMENSION_CATALOG


def register(subparsers) -> None:
    p = subparsers.add_parser("catalog", help="List the behavioral dimension catalog")
    p.add_argument("--rubric", action="store_true", help="Also print the 5-level scoring rubric")
    p.add_argument("--json", action="store_true", help="Print the catalog as JSON")
    p.set_defaults(func=run)


def run(args) -> int:
    if args.json:
        print(json.dumps([d.model_dump(mode="json") for d in DIMENSION_CATALOG], indent=2))
        return 0

    print(f"Behavioral dimensions ({len(DIMENSION_CATALOG)}):")
    print()
    for dim in DIMENSION_CATALOG:
        print(f"- {dim.id}: {dim.label}  [{dim.low_label} (0.0) <-> {dim.high_label} (1.0)]")
        print(f"    {dim.description}  (assistant default {dim.ai_default:.2f})")
        if args.rubric:
            for level, text in dim.rubric.items():
                print(f"      {level:>4}: {text}")
    return 0
