#!/usr/bin/env python3
"""Create missing dm_* metadata columns on the authoring and published libraries.

Reads the same environment as the app (GRAPH_*, AUTHORING_LIBRARY,
PUBLISHED_LIBRARY). Safe to re-run.

Usage:
  python scripts/ensure_registry_schema.py [--dry-run]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.config import load_config
from app.dms.identity import identity_from_config
from app.dms.modules.document_registry.graph_client import GraphClient
from app.dms.modules.document_registry.schema import column_definitions, ensure_registry_schema


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--dry-run", action="store_true", help="List the columns without touching the libraries")
    args = parser.parse_args()

    load_dotenv()
    config = load_config()
    logging.basicConfig(level=config["LOG_LEVEL"], format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.dry_run:
        for col in column_definitions():
            print(col["name"])
        return

    if not config["GRAPH_SITE_URL"]:
        print("GRAPH_SITE_URL is not set.", flush=True)
        sys.exit(1)

    client = GraphClient(
        identity=identity_from_config(config),
        site_url=config["GRAPH_SITE_URL"],
        base_url=config["GRAPH_BASE_URL"],
    )
    for library in (config["AUTHORING_LIBRARY"], config["PUBLISHED_LIBRARY"]):
        created = ensure_registry_schema(client, library)
        print(f"{library}: {len(created)} column(s) created", flush=True)


if __name__ == "__main__":
    main()
