from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .app import create_rules_app
from .form import analyze_form
from .schemas import SchemaRegistry


def _check(config_path: str, schemas_path: str | None) -> int:
    config = json.loads(Path(config_path).read_text(encoding="utf-8"))
    schemas = SchemaRegistry.from_file(schemas_path) if schemas_path else None
    report = analyze_form(config, schemas=schemas)
    print(json.dumps(report, indent=2, sort_keys=True))
    return 1 if report["errors"] else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Cross-field rule engine for declarative forms")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the form rules HTTP service")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--schemas", default=None)

    check = commands.add_parser("check", help="Collect the rules of a form configuration and report them")
    check.add_argument("config")
    check.add_argument("--schemas", default=os.environ.get("FORM_SCHEMAS_PATH") or None)

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, os.environ.get("APP_LOG_LEVEL", "WARNING").upper(), logging.WARNING))

    if args.command == "check":
        return _check(args.config, args.schemas)

    app = create_rules_app(args.schemas)
    app.run(host=args.host, port=args.port, debug=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
