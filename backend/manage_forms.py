#!/usr/bin/env python3
"""
Import, export and check intake form definitions.

Usage:
    # Check a definition file without touching the database
    python manage_forms.py check ./forms/intake.json

    # Import one or more definition files (legacy formats are converted)
    python manage_forms.py import ./forms/intake.json ./forms/followup.json

    # Export every stored form as canonical JSON
    python manage_forms.py export --output-dir ./forms_backup

    # Override MongoDB connection (optional)
    python manage_forms.py export --output-dir ./out --mongo-uri "mongodb://..." --db-name "mydb"
"""
import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from intake_engine.errors import MalformedDefinitionError
from intake_engine.loader import definition_to_dict, dump_definition, load_form

# Load environment variables
load_dotenv()


def get_mongo_config(mongo_uri=None, db_name=None):
    """Get MongoDB configuration from args or environment."""
    if not mongo_uri:
        mongo_uri = os.getenv("MONGO_URI")
    if not db_name:
        db_name = os.getenv("DB_NAME")

    if not mongo_uri or not db_name:
        raise ValueError(
            "MongoDB configuration not found. "
            "Set MONGO_URI and DB_NAME in .env file or use --mongo-uri and --db-name arguments."
        )

    return mongo_uri, db_name


def read_definition(path):
    """Load a definition file and print its diagnostics. Returns LoadedForm or None."""
    path = Path(path)
    try:
        loaded = load_form(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        print(f"ERROR: File not found: {path}")
        return None
    except MalformedDefinitionError as e:
        print(f"ERROR: {path}: {e.message}")
        return None

    definition = loaded.definition
    print(f"✓ {path}: '{definition.id or '(no id)'}' "
          f"{definition.page_count} page(s), {len(definition.elements())} element(s), "
          f"{len(loaded.rules)} rule(s)")
    for diagnostic in loaded.diagnostics:
        print(f"  WARNING [{diagnostic.kind.value}] {diagnostic.message}")
    return loaded


def check_command(args):
    """Handle check command."""
    failures = 0
    for path in args.files:
        if read_definition(path) is None:
            failures += 1
    return 1 if failures else 0


def import_command(args):
    """Handle import command."""
    try:
        mongo_uri, db_name = get_mongo_config(args.mongo_uri, args.db_name)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    client = MongoClient(mongo_uri)
    forms = client[db_name].forms
    imported = 0

    try:
        for path in args.files:
            loaded = read_definition(path)
            if loaded is None:
                continue

            definition = loaded.definition
            if not definition.id:
                # legacy element lists carry no id; fall back to the file name
                definition = definition.model_copy(update={"id": Path(path).stem})

            doc = definition_to_dict(definition)
            doc["_id"] = definition.id
            existing = forms.find_one({"_id": definition.id}, {"createdAt": 1})
            now = datetime.utcnow()
            doc["createdAt"] = existing.get("createdAt", now) if existing else now
            doc["updatedAt"] = now
            forms.replace_one({"_id": definition.id}, doc, upsert=True)
            imported += 1
            print(f"  imported as '{definition.id}'")
    except PyMongoError as e:
        print(f"ERROR: MongoDB write failed: {e}")
        return 1
    finally:
        client.close()

    print(f"\n✓ Imported {imported} of {len(args.files)} file(s)")
    return 0 if imported == len(args.files) else 1


def export_command(args):
    """Handle export command."""
    output_dir = Path(args.output_dir).resolve()
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        mongo_uri, db_name = get_mongo_config(args.mongo_uri, args.db_name)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    client = MongoClient(mongo_uri)
    exported = 0
    failed = 0
    try:
        for doc in client[db_name].forms.find({}):
            form_id = str(doc["_id"])
            stored = {k: v for k, v in doc.items() if k not in ("_id", "createdAt", "updatedAt")}
            try:
                loaded = load_form(stored)
            except MalformedDefinitionError as e:
                print(f"ERROR: stored form '{form_id}' is malformed: {e.message}")
                failed += 1
                continue

            target = output_dir / f"{form_id}.json"
            target.write_text(dump_definition(loaded.definition, indent=2), encoding="utf-8")
            exported += 1
            print(f"✓ {form_id} -> {target}")
    except PyMongoError as e:
        print(f"ERROR: MongoDB read failed: {e}")
        return 1
    finally:
        client.close()

    print(f"\n✓ Exported {exported} form(s) to {output_dir}")
    return 1 if failed else 0


def main():
    parser = argparse.ArgumentParser(
        description="Import, export and check intake form definitions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python manage_forms.py check ./forms/intake.json
  python manage_forms.py import ./forms/*.json
  python manage_forms.py export --output-dir ./forms_backup
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    check_parser = subparsers.add_parser("check", help="Validate definition files")
    check_parser.add_argument("files", nargs="+", help="Definition JSON files")

    import_parser = subparsers.add_parser("import", help="Import definition files into MongoDB")
    import_parser.add_argument("files", nargs="+", help="Definition JSON files")
    import_parser.add_argument("--mongo-uri", help="MongoDB URI (overrides .env)")
    import_parser.add_argument("--db-name", help="Database name (overrides .env)")

    export_parser = subparsers.add_parser("export", help="Export stored definitions as JSON")
    export_parser.add_argument("--output-dir", required=True, help="Output directory")
    export_parser.add_argument("--mongo-uri", help="MongoDB URI (overrides .env)")
    export_parser.add_argument("--db-name", help="Database name (overrides .env)")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "check":
        return check_command(args)
    elif args.command == "import":
        return import_command(args)
    elif args.command == "export":
        return export_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
