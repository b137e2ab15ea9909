"""CLI script to import a question bank file into the backend DB.
Usage: python scripts/import_bank.py FILE [FILE ...] [--dry-run] [--no-dedupe]
"""
import sys
import argparse
import logging
import pathlib
from typing import List
# Ensure `backend/` is on sys.path so `satprep` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from satprep.database import engine, create_db_and_tables
from satprep import services
from satprep.errors import AppError

logger = logging.getLogger("satprep.importer")


def main(paths: List[str], dry_run: bool = False, deduplicate: bool = True) -> int:
    """Import every file in `paths` and print a per-file summary.

    Returns the number of files that failed to import, so the exit code
    is non-zero when anything went wrong.
    """
    create_db_and_tables()
    failures = 0
    total_created = 0
    total_skipped = 0
    with Session(engine) as session:
        svc = services.ImportService(session)
        for p in paths:
            f = pathlib.Path(p)
            try:
                result = svc.import_bank(f.read_bytes(), f.name, deduplicate=deduplicate, dry_run=dry_run)
            except (OSError, ValueError, AppError) as e:
                logger.error("import failed file=%s: %s", f, e)
                failures += 1
                continue
            total_created += result['created']
            total_skipped += result['skipped']
            for err in result['errors']:
                logger.warning("file=%s item=%s: %s", f, err['index'], err['error'])
            for w in result['warnings']:
                logger.warning("file=%s: %s", f, w)
            print(f"Imported {f}: created {result['created']}, skipped {result['skipped']}, errors {len(result['errors'])}")
    suffix = ' (dry run)' if dry_run else ''
    print(f'Total created questions: {total_created}, skipped {total_skipped}{suffix}')
    return failures


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser()
    parser.add_argument('files', nargs='+', help='JSON or JSONL question bank files')
    parser.add_argument('--dry-run', action='store_true', help='Validate without writing to the database')
    parser.add_argument('--no-dedupe', action='store_true', help='Add a new current version to existing questions')
    args = parser.parse_args()
    sys.exit(1 if main(args.files, dry_run=args.dry_run, deduplicate=not args.no_dedupe) else 0)
