#!/usr/bin/env python3
"""Loads contracts from a JSON export and precomputes their embeddings."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dotenv import load_dotenv
from contract_inbox.service import InboxService


def main() -> int:
    load_dotenv(ROOT_DIR / ".env")
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Precompute contract embeddings for semantic search.")
    parser.add_argument("--contracts", type=Path, default=None, help="JSON list of contracts to upsert first.")
    parser.add_argument("--limit", type=int, default=None, help="Embed at most this many contracts.")
    args = parser.parse_args()

    service = InboxService(root_dir=ROOT_DIR)
    service.ensure_default_inbox()

    if args.contracts is not None:
        rows = json.loads(args.contracts.read_text(encoding="utf-8"))
        count = service.upsert_contracts(rows)
        print(f"upserted: {count}")

    result = service.precompute_embeddings(limit=args.limit)
    print("Embedding Precompute")
    print(f"embedded: {result['embedded']}")
    print(f"failed: {result['failed']}")
    print(f"remaining: {result['remaining']}")
    return 0 if result["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
