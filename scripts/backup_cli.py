#!/usr/bin/env python3
"""
Bookshelf Backup CLI Tool

Command-line interface for library backup, restore and bin maintenance.
Can be used for automated scripts, cron jobs, or manual operations.
"""

import argparse
import sys
import os
from pathlib import Path
from datetime import datetime
import logging

# Add the parent directory to the path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Config
from bookshelf import create_library
from bookshelf.domain.errors import BookshelfError, ImportAborted
from bookshelf.services import run_async
from bookshelf.services.backup_codec import backup_filename, dumps


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def _library(args):
    library = create_library(Config, user_id=args.user)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    return library


def export_backup(args):
    """Export the user's library to a JSON backup file."""
    try:
        library = _library(args)
        document = run_async(library.export_backup(args.user))

        output = args.output or os.path.join(args.output_dir, backup_filename(datetime.now()))
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        with open(output, 'w', encoding='utf-8') as f:
            f.write(dumps(document))

        print("✅ Backup exported successfully!")
        print(f"   Books: {len(document['books'])}")
        print(f"   Bin: {len(document['bin'])}")
        print(f"   Genres: {len(document['genres'])}")
        print(f"   Series: {len(document['series'])}")
        print(f"   Wishlist: {len(document['wishlist'])}")
        print(f"   Location: {output}")
        return True

    except BookshelfError as e:
        print(f"❌ {e}")
        return False
    except OSError as e:
        print(f"❌ Error writing backup: {e}")
        return False


def import_backup(args):
    """Import a JSON backup into the user's library."""
    try:
        with open(args.file, 'rb') as f:
            raw = f.read()
    except OSError as e:
        print(f"❌ Error reading backup: {e}")
        return False

    def progress(phase, done, total):
        if args.verbose:
            print(f"   {phase}: {done}/{total}")

    library = _library(args)
    print(f"Importing {args.file}...")
    try:
        summary = run_async(library.import_backup(args.user, raw, progress))
    except ImportAborted as e:
        print(f"❌ {e}")
        for line in e.summary.lines():
            print(f"   {line}")
        return False
    except BookshelfError as e:
        print(f"❌ {e}")
        return False

    print("✅ Import complete")
    for line in summary.lines():
        print(f"   {line}")
    return not summary.failures


def list_bin(args):
    """List binned books, purging the expired ones first."""
    try:
        library = _library(args)
        view = run_async(library.load_bin(args.user))
    except BookshelfError as e:
        print(f"❌ Error loading bin: {e}")
        return False

    if view.purged or view.series_purged:
        print(f"ℹ️  Purged {view.purged} expired books and {view.series_purged} expired series")
    if not view.entries:
        print("Bin is empty.")
        return True

    print(f"Found {len(view.entries)} books in the bin:")
    print()
    for entry in view.entries:
        book = entry.book
        print(f"🗑️  {book.title}" + (f" by {book.author}" if book.author else ""))
        print(f"   ID: {book.id}")
        print(f"   Deleted: {book.deleted_at.strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"   Days remaining: {entry.days_remaining}")
        print()
    return True


def purge_bin(args):
    """Purge expired binned books and series."""
    try:
        library = _library(args)
        view = run_async(library.load_bin(args.user))
    except BookshelfError as e:
        print(f"❌ Error purging bin: {e}")
        return False

    if view.purged or view.series_purged:
        print(f"✅ Purged {view.purged} books and {view.series_purged} series")
    else:
        print("ℹ️  Nothing has expired")
    return True


def empty_bin(args):
    """Permanently delete every binned book."""
    if not args.yes:
        confirm = input("This permanently deletes every book in the bin. Continue? (y/N): ")
        if confirm.lower() != 'y':
            print("Cancelled.")
            return True
    try:
        library = _library(args)
        purged = run_async(library.bin.empty_bin(args.user))
    except BookshelfError as e:
        print(f"❌ Error emptying bin: {e}")
        return False

    print(f"✅ Permanently deleted {purged} books")
    return True


def recount(args):
    """Rebuild genre and series book counters."""
    try:
        library = _library(args)
        result = run_async(library.recount(args.user))
    except BookshelfError as e:
        print(f"❌ Error recounting: {e}")
        return False

    print("✅ Counters rebuilt")
    print(f"   Genres updated: {result['genres']['updated']}")
    print(f"   Series updated: {result['series']['updated']}")
    print(f"   Active books: {result['genres']['totalBooks']}")
    return True


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Bookshelf Backup CLI Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --user alice export --output-dir backups
  %(prog)s --user alice import bookshelf-backup-2024-01-31.json
  %(prog)s --user alice bin list
  %(prog)s --user alice bin empty --yes
  %(prog)s --user alice recount
        """
    )

    parser.add_argument('--user', required=True, help='Id of the user whose library to use')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Export command
    export_parser = subparsers.add_parser('export', help='Export the library to a JSON backup')
    export_parser.add_argument('--output', help='Backup file to write')
    export_parser.add_argument('--output-dir', default='.',
                               help='Directory for the dated backup file (default: current directory)')

    # Import command
    import_parser = subparsers.add_parser('import', help='Import a JSON backup')
    import_parser.add_argument('file', help='Backup file to import')

    # Bin commands
    bin_parser = subparsers.add_parser('bin', help='Bin maintenance')
    bin_subparsers = bin_parser.add_subparsers(dest='bin_command')
    bin_subparsers.add_parser('list', help='List binned books')
    bin_subparsers.add_parser('purge', help='Purge expired binned books')
    empty_parser = bin_subparsers.add_parser('empty', help='Permanently delete every binned book')
    empty_parser.add_argument('--yes', '-y', action='store_true',
                              help='Skip confirmation prompt')

    # Recount command
    subparsers.add_parser('recount', help='Rebuild genre and series book counters')

    args = parser.parse_args()

    if not args.command or (args.command == 'bin' and not args.bin_command):
        parser.print_help()
        return 1

    setup_logging(args.verbose)

    # Command dispatch
    commands = {
        'export': export_backup,
        'import': import_backup,
        'bin list': list_bin,
        'bin purge': purge_bin,
        'bin empty': empty_bin,
        'recount': recount,
    }
    key = f"bin {args.bin_command}" if args.command == 'bin' else args.command

    try:
        success = commands[key](args)
        return 0 if success else 1
    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user")
        return 1
    except Exception as e:
        print(f"❌ Unexpected error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
