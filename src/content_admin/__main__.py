from __future__ import annotations

import argparse

from .app import create_component_app, create_menu_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run content admin tree services")
    parser.add_argument("service", choices=["menus", "components"])
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--db", default=None, help="SQLite file; defaults to TREE_ADMIN_DB_PATH or ./data.db")
    args = parser.parse_args()

    if args.service == "menus":
        app = create_menu_app(args.db)
    else:
        app = create_component_app(args.db)

    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
