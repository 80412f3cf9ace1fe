"""``driftguard export``: write the cross-session report index (or one chat's report) to JSON."""
from __future__ import annotations

from pathlib import Path


def register(subparsers) -> None:
    p = subparsers.add_parser("export", help="Export session reports to JSON")
    p.add_argument("--db", default=None, help="SQLite file (default: $DRIFTGUARD_DB_PATH)")
    p.add_argument("--out", default=None, help="Output directory (default: $DRIFTGUARD_EXPORT_DIR)")
    p.add_argument("--chat", default=None, help="Export the stored report of one chat instead of the index")
    p.add_argument("--list", action="store_true", help="Print the report index instead of writing a file")
    p.set_defaults(func=run)


def run(args) -> int:
    from backend.app.config import DEFAULT_DB_PATH, DEFAULT_EXPORT_DIR
    from backend.app.core.report import export_all_reports, export_report, load_report_index
    from backend.app.core.store import SqliteChatMetadataStore, SqliteSettingsStore
    from backend.app.models.state import SessionState

    db_path = args.db or DEFAULT_DB_PATH
    if not Path(db_path).is_file():
        print(f"ERROR: database not found: {db_path}")
        return 1
    out_dir = args.out or DEFAULT_EXPORT_DIR
    settings_store = SqliteSettingsStore(db_path)

    if args.list:
        index = load_report_index(settings_store)
        if not index:
            print("No reports in the index.")
            return 0
        for i, e in enumerate(index):
            scores = "/".join(str(s) for s in e.scores)
            print(f"[{i}] {e.date} {e.card_name} ({e.model}) chat={e.chat_id} scores={scores}")
        return 0

    if args.chat:
        data = SqliteChatMetadataStore(db_path).load(args.chat)
        if data is None:
            print(f"ERROR: no stored state for chat {args.chat!r}")
            return 1
        path = export_report(SessionState.from_stored(data), None, out_dir)
    else:
        path = export_all_reports(settings_store, out_dir)
    if path is None:
        print("Nothing to export (no report generated yet).")
        return 1
    print(f"Wrote {path}")
    return 0
