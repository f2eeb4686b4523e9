#!/usr/bin/env python3
"""Load difficulties and system questions from a JSON catalog.

Usage:
    python scripts/seed_catalog.py [--file PATH] [--skip-migrations]

Reads DATABASE_PATH / DATABASE_URL from .env like the app. The catalog is:

    {
      "difficulties": [
        {"name": "...", "topic": "Secuencia", "description": "...",
         "questions": [
           {"grade": "Low", "statement": "...",
            "options": [{"text": "...", "is_correct": true}, ...]}
         ]}
      ]
    }

Re-running is safe: existing difficulties are reused by name and questions
whose statement already exists are skipped.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

logger = logging.getLogger("seed_catalog")

DEFAULT_CATALOG = Path(__file__).resolve().parent / "catalog.example.json"


async def seed(catalog: dict, run_migrations: bool = True) -> dict:
    from app.db import reinforcement_store as store
    from app.db.database import init_db, open_db, close_standalone_db, close_db
    from app.models.enums import Topic
    from app.services import question_bank
    from app.services.errors import DuplicateStatement

    if run_migrations:
        await init_db()

    counts = {"difficulties": 0, "questions": 0, "skipped": 0}
    db = await open_db()
    try:
        existing = {d["name"]: d["id"] for d in await store.list_difficulties(db)}

        for entry in catalog.get("difficulties", []):
            name = entry["name"]
            topic = Topic(entry["topic"]).value
            difficulty_id = existing.get(name)
            if difficulty_id is None:
                try:
                    difficulty_id = await store.insert_difficulty(
                        db, name, topic, entry.get("description")
                    )
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
                existing[name] = difficulty_id
                counts["difficulties"] += 1
                print(f"  + difficulty {name} ({topic})")

            for question in entry.get("questions", []):
                try:
                    await question_bank.create_question(
                        db,
                        difficulty_id=difficulty_id,
                        grade=question["grade"],
                        statement=question["statement"],
                        options=question["options"],
                    )
                except DuplicateStatement:
                    counts["skipped"] += 1
                    continue
                counts["questions"] += 1
    finally:
        await close_standalone_db(db)
        await close_db()

    return counts


def main():
    parser = argparse.ArgumentParser(
        description="Seed difficulties and system questions from JSON"
    )
    parser.add_argument(
        "--file",
        default=str(DEFAULT_CATALOG),
        help="Catalog JSON file (default: scripts/catalog.example.json)",
    )
    parser.add_argument(
        "--skip-migrations",
        action="store_true",
        help="Do not run alembic upgrade before seeding",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s [%(name)s] %(message)s")

    path = Path(args.file)
    if not path.exists():
        print(f"ERROR: catalog not found: {path}")
        sys.exit(1)

    catalog = json.loads(path.read_text(encoding="utf-8"))
    counts = asyncio.run(seed(catalog, run_migrations=not args.skip_migrations))
    print()
    print(
        f"Seed complete: {counts['difficulties']} difficulties, "
        f"{counts['questions']} questions ({counts['skipped']} already present)"
    )


if __name__ == "__main__":
    main()
