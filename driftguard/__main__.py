"""Entry point for ``python -m driftguard <command>``.

Commands:
    catalog  – list the behavioral dimension catalog
    config   – show resolved drift-monitor settings
    doctor   – check environment, deps, analysis backend, data dirs
    replay   – run a recorded chat transcript through the drift monitor
    export   – write every indexed session report to one JSON file
    serve    – start the HTTP API
"""
from driftguard.cli import main

if __name__ == "__main__":
    main()
