"""``driftguard config``: show effective drift-monitor settings (defaults <- file <- env)."""
from __future__ import annotations

import json

from backend.app.config import DriftSettings, load_settings


def register(subparsers) -> None:
    p = subparsers.add_parser("config", help="Show effective settings after file/env overrides")
    p.add_argument("--file", default=None, help="YAML settings file (default: $DRIFTGUARD_SETTINGS_FILE)")
    p.add_argument("--json", action="store_true", help="Print settings as JSON")
    p.add_argument("--diff", action="store_true", help="Only show settings that differ from the defaults")
    p.set_defaults(func=run)


def run(args) -> int:
    settings = load_settings(path=args.file)
    data = settings.public_dict()
    if args.diff:
        defaults = DriftSettings().public_dict()
        data = {k: v for k, v in data.items() if defaults.get(k) != v}

    if args.json:
        print(json.dumps(data, indent=2, sort_keys=True))
        return 0

    print("Effective drift-monitor settings (after file/env overrides):")
    print()
    if not data:
        print("  (all defaults)")
    for key in sorted(data):
        print(f"- {key}: {data[key]}")

    print("\nOverride pattern:")
    print("  DRIFTGUARD_<SETTING>, e.g. DRIFTGUARD_DRIFT_THRESHOLD=0.25")
    print("  DRIFTGUARD_SETTINGS_FILE=<path to YAML mapping>")
    return 0
