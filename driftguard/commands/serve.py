"""``driftguard serve``: start the HTTP API with uvicorn."""
from __future__ import annotations

import os


def register(subparsers) -> None:
    p = subparsers.add_parser("serve", help="Start the DriftGuard HTTP API")
    p.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development)")
    p.add_argument("--settings", default=None, help="YAML settings file (sets DRIFTGUARD_SETTINGS_FILE)")
    p.set_defaults(func=run)


def run(args) -> int:
    from shared.runtime_settings import load_security_settings

    security = load_security_settings()
    problems = security.startup_problems()
    for problem in problems:
        print(f"ERROR: {problem}")
    if problems:
        return 1
    if args.host not in ("127.0.0.1", "localhost") and not security.auth_enabled:
        print(f"  WARNING: binding {args.host} without DRIFTGUARD_API_TOKEN; the API is unauthenticated")
    if args.settings:
        os.environ["DRIFTGUARD_SETTINGS_FILE"] = args.settings

    import uvicorn

    print(f"\n  Starting DriftGuard API on http://{args.host}:{args.port}")
    print(f"    API docs: http://{args.host}:{args.port}/docs\n")
    uvicorn.run("backend.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0
