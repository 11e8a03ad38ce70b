#!/usr/bin/env python3
"""
Music Cleaner Script
Flattens a music folder and renames its songs from their embedded tags.

Features:
- Extract nested audio files to the folder root, then delete subfolders
- Rename root files to "Title - Artist.ext" using tag metadata
- Dry run preview
- JSON change log for auditing
- Undo script generation for renames
- Graceful interrupt handling
"""

import os
import sys
import argparse
import shutil
import json
import signal
from pathlib import Path
from datetime import datetime
from typing import Optional, Dict, List, Set, Tuple, Any

from dotenv import load_dotenv
from mutagen import File as MutagenFile, MutagenError

# Load environment variables from .env file
load_dotenv()

# Configuration
EXTENSIONS_ENV = "MUSIC_CLEANER_EXTENSIONS"
INVALID_CHARS = '<>:"/\\|?*'
COMMANDS = ('extract', 'rename', 'both')

# Global logger for interrupt handling
_current_logger: Optional['ChangeLogger'] = None
_current_log_file: Optional[Path] = None
_current_undo_script: Optional[Path] = None


def signal_handler(signum, frame):
    """Handle Ctrl+C gracefully - save logs before exit."""
    print("\n\n⚠️  Interrupted! Saving progress...")
    if _current_logger and _current_log_file:
        try:
            _current_logger.save(_current_log_file)
            print(f"📝 Partial log saved: {_current_log_file.name}")
            if _current_undo_script:
                _current_logger.generate_undo_script(_current_undo_script)
                print(f"↩️  Partial undo script saved: {_current_undo_script.name}")
        except OSError as e:
            print(f"❌ Could not save logs: {e}")
    sys.exit(1)


class TagError(Exception):
    """The tag block of a file could not be read."""


class SkipFile(Exception):
    """A file was left untouched; the message is the reason."""


class ChangeLogger:
    """Logs all file changes to JSON for auditing and undo."""

    def __init__(self):
        self.changes: List[Dict[str, Any]] = []
        self.start_time = datetime.now().isoformat()

    def _log(self, action: str, **fields: Any):
        entry: Dict[str, Any] = {'action': action}
        entry.update(fields)
        entry['timestamp'] = datetime.now().isoformat()
        self.changes.append(entry)

    def log_copy(self, source: Path, dest: Path):
        """Log a file copied up to the root."""
        self._log('copy', source=str(source), destination=str(dest))

    def log_remove(self, folder: Path):
        """Log a deleted subfolder."""
        self._log('remove', folder=str(folder))

    def log_rename(self, source: Path, dest: Path, tags: Dict[str, str]):
        """Log a file renamed from its tags."""
        self._log('rename', source=str(source), destination=str(dest), metadata=tags)

    def log_skip(self, file_path: Path, reason: str):
        """Log a skipped file."""
        self._log('skip', file=str(file_path), reason=reason)

    def log_error(self, file_path: Path, error: str):
        """Log an error."""
        self._log('error', file=str(file_path), error=error)

    def count(self, action: str) -> int:
        return len([c for c in self.changes if c['action'] == action])

    def save(self, log_file: Path):
        """Save log to file."""
        log_data = {
            'start_time': self.start_time,
            'end_time': datetime.now().isoformat(),
            'total_changes': len([c for c in self.changes
                                  if c['action'] in ('copy', 'remove', 'rename')]),
            'changes': self.changes
        }
        with open(log_file, 'w', encoding='utf-8') as f:
            json.dump(log_data, f, indent=2, ensure_ascii=False)

    def generate_undo_script(self, script_path: Path):
        """Generate a shell script to undo all renames."""
        renames = [c for c in self.changes if c['action'] == 'rename']
        if not renames:
            return

        copies = self.count('copy')
        removals = self.count('remove')

        with open(script_path, 'w', encoding='utf-8') as f:
            f.write("#!/bin/bash\n")
            f.write("# Undo script generated by Music Cleaner\n")
            f.write(f"# Generated: {datetime.now().isoformat()}\n")
            f.write(f"# Total files to restore: {len(renames)}\n")
            if copies or removals:
                f.write(f"# Not restorable: {copies} extracted files, {removals} removed folders\n")
            f.write("\nset -e\n\n")

            for rename in reversed(renames):
                source = rename['source'].replace("'", "'\\''")
                dest = rename['destination'].replace("'", "'\\''")
                f.write(f"mv '{dest}' '{source}'\n")

            f.write("\necho 'Undo complete!'\n")

        # Make executable
        os.chmod(script_path, 0o755)


def sanitize_filename(name: str) -> str:
    """Remove characters that are invalid in Windows file names."""
    for char in INVALID_CHARS:
        name = name.replace(char, '')
    return name


def parse_extensions(value: Optional[str]) -> Set[str]:
    """Parse a comma separated extension list like "flac,mp3,webm"."""
    if not value:
        return set()
    extensions = set()
    for item in value.split(','):
        ext = item.strip().lstrip('.')
        if ext:
            extensions.add(ext)
    return extensions


def file_extension(file_path: Path) -> Optional[str]:
    """Return the last suffix without its dot, or None."""
    return file_path.suffix[1:] or None


def scan_path(directory: Path) -> Tuple[List[Path], List[Path]]:
    """List a directory once, splitting it into (files, folders)."""
    files: List[Path] = []
    folders: List[Path] = []

    with os.scandir(directory) as entries:
        for entry in sorted(entries, key=lambda e: e.name):
            # Symlinked folders are not followed
            if entry.is_dir(follow_symlinks=False):
                folders.append(Path(entry.path))
            elif entry.is_file():
                files.append(Path(entry.path))

    return files, folders


def find_nested_files(folders: List[Path]) -> List[Path]:
    """Collect every file below the given folders, depth-first."""
    found: List[Path] = []
    stack = list(reversed(folders))

    while stack:
        folder = stack.pop()
        files, subfolders = scan_path(folder)
        found.extend(files)
        stack.extend(reversed(subfolders))

    return found


def extract_music(files: List[Path], extensions: Set[str], destination: Path,
                  logger: ChangeLogger, dry_run: bool = False,
                  verbose: bool = False) -> int:
    """Copy files with a matching extension into destination. Returns the count."""
    copied = 0
    for file_path in files:
        if file_extension(file_path) not in extensions:
            continue

        dest_path = destination / file_path.name
        # A folder with the same name would be removed along with the copy
        if dest_path.is_dir():
            raise IsADirectoryError(f"Cannot extract {file_path.name}: {dest_path} is a folder")
        if not dry_run:
            shutil.copyfile(file_path, dest_path)
            shutil.copystat(file_path, dest_path)
            logger.log_copy(file_path, dest_path)
        if verbose:
            verb = "Would copy" if dry_run else "Copied"
            print(f"   {verb}: {file_path.relative_to(destination)}")
        copied += 1

    return copied


def remove_folders(folders: List[Path], logger: ChangeLogger,
                   dry_run: bool = False, verbose: bool = False) -> int:
    """Delete every folder not starting with '.'. Returns the count."""
    removed = 0
    for folder in folders:
        if folder.name.startswith('.'):
            continue

        if not dry_run:
            shutil.rmtree(folder)
            logger.log_remove(folder)
        if verbose:
            verb = "Would remove" if dry_run else "Removed"
            print(f"   {verb}: {folder.name}/")
        removed += 1

    return removed


def extract(folder_path: Path, extensions: Set[str], logger: ChangeLogger,
            dry_run: bool = False, verbose: bool = False, quiet: bool = False) -> int:
    """
    Move nested files up to folder_path and delete its subfolders.
    Files are copied first; folders are removed only once every copy succeeded.
    Returns the number of extracted files.
    """
    files, folders = scan_path(folder_path)
    if not quiet:
        print("📂 Found:")
        print(f"   => {len(files)} files")
        print(f"   => {len(folders)} folders")

    deep_files = find_nested_files(folders)
    if not quiet:
        print(f"   => {len(deep_files)} files nested in folders\n")
        print("📦 Extracting...")

    copied = extract_music(deep_files, extensions, folder_path, logger, dry_run, verbose)

    if not quiet:
        print(f"   {copied} files with extensions {', '.join(sorted(extensions))}\n")
        print("🧹 Removing folders...")

    removed = remove_folders(folders, logger, dry_run, verbose)
    if not quiet:
        print(f"   {removed} folders\n")

    return copied


def read_tag(file_path: Path) -> Dict[str, List[str]]:
    """Read the tag block of an audio file as key -> list of strings."""
    try:
        audio = MutagenFile(file_path, easy=True)
    except (MutagenError, OSError) as e:
        raise TagError(str(e)) from e

    if audio is None:
        raise TagError("unsupported audio format")
    if audio.tags is None:
        raise TagError("no tag block found")

    tags: Dict[str, List[str]] = {}
    for key in audio.keys():
        values = audio[key]
        if not isinstance(values, list):
            values = [values]
        tags[key.lower()] = [str(v) for v in values]
    return tags


def first_tag_value(tags: Dict[str, List[str]], key: str, label: str) -> str:
    """First value of a tag; absent and empty tags fail with different reasons."""
    values = tags.get(key)
    if values is None:
        raise SkipFile(f"failed to get {label}")
    if not values or not values[0].strip():
        raise SkipFile(f"{key} tag is empty")
    return values[0]


def build_new_name(file_path: Path, tags: Dict[str, List[str]]) -> Tuple[str, str, str]:
    """Return sanitized (title, artist, extension) for the canonical file name."""
    artist = first_tag_value(tags, 'artist', 'artist name')
    title = first_tag_value(tags, 'title', 'song title')

    ext = file_extension(file_path)
    if ext is None:
        raise SkipFile("failed to get file extension")

    if '\x00' in artist:
        raise SkipFile("artist contains a null character")
    if '\x00' in title:
        raise SkipFile("title contains a null character")

    artist = sanitize_filename(artist)
    title = sanitize_filename(title)
    if not artist.strip():
        raise SkipFile("artist is empty after removing unsafe characters")
    if not title.strip():
        raise SkipFile("title is empty after removing unsafe characters")

    return title, artist, ext


def rename_file_with_metadata(file_path: Path, folder_path: Path,
                              dry_run: bool = False) -> Tuple[Path, Dict[str, str]]:
    """
    Rename a single file to "Title - Artist.ext".
    Raises TagError or SkipFile when the file should be left as-is,
    OSError when the rename itself fails.
    """
    title, artist, ext = build_new_name(file_path, read_tag(file_path))
    base = f"{title} - {artist}"
    dest_path = folder_path / f"{base}.{ext}"

    if dest_path == file_path:
        raise SkipFile("already named")

    # Handle duplicates
    if dest_path.exists() and not dest_path.samefile(file_path):
        counter = 1
        while dest_path.exists():
            dest_path = folder_path / f"{base} ({counter}).{ext}"
            counter += 1

    if not dry_run:
        os.rename(file_path, dest_path)

    return dest_path, {'title': title, 'artist': artist}


def rename(folder_path: Path, logger: ChangeLogger, dry_run: bool = False,
           verbose: bool = False, quiet: bool = False) -> Tuple[int, int, int]:
    """
    Rename every root file from its tags.
    Returns tuple of (renamed, skipped, failed)
    """
    if not quiet:
        print("🔄 Updating directories...")
    files, _ = scan_path(folder_path)

    if not quiet:
        print("🏷️  Renaming files...")

    renamed = 0
    skipped = 0
    failed = 0

    for file_path in files:
        # Hidden files, including our own logs
        if file_path.name.startswith('.'):
            continue

        try:
            dest_path, tags = rename_file_with_metadata(file_path, folder_path, dry_run)
        except (TagError, SkipFile) as e:
            if not quiet:
                print(f"  ⏭️  Skipped {file_path.name} because {e}")
            logger.log_skip(file_path, str(e))
            skipped += 1
            continue
        except OSError as e:
            if not quiet:
                print(f"  ⚠️  Rename failed for {file_path.name}: {e}")
            logger.log_error(file_path, f"Rename failed: {e}")
            failed += 1
            continue

        if not dry_run:
            logger.log_rename(file_path, dest_path, tags)
        if verbose:
            verb = "Would rename" if dry_run else "Renamed"
            print(f"  ✅ {verb}: {file_path.name} → {dest_path.name}")
        renamed += 1

    if not quiet:
        print()

    return renamed, skipped, failed


def clean_music(folder_path: Path, command: str, extensions: Set[str],
                dry_run: bool = False, verbose: bool = False, quiet: bool = False,
                write_log: bool = False) -> ChangeLogger:
    """
    Main function to extract and/or rename music files in-place.
    Returns the change logger of the run.
    """
    global _current_logger, _current_log_file, _current_undo_script

    logger = ChangeLogger()
    log_file = None
    undo_script = None
    if write_log and not dry_run:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = folder_path / f'.music_cleaner_log_{timestamp}.json'
        undo_script = folder_path / f'.music_cleaner_undo_{timestamp}.sh'

    # Set global references for interrupt handler
    _current_logger = logger
    _current_log_file = log_file
    _current_undo_script = undo_script

    print(f"\n🎵 Music Cleaner")
    print(f"{'='*50}")
    print(f"Folder: {folder_path}")
    print(f"Command: {command}")
    if command in ('extract', 'both'):
        print(f"Extensions: {', '.join(sorted(extensions))}")
    print(f"Mode: {'DRY RUN (no files will be changed)' if dry_run else 'LIVE'}")
    print(f"{'='*50}\n")

    extracted = 0
    renamed = skipped = failed = 0
    try:
        if command in ('extract', 'both'):
            extracted = extract(folder_path, extensions, logger, dry_run, verbose, quiet)
        if command in ('rename', 'both'):
            renamed, skipped, failed = rename(folder_path, logger, dry_run, verbose, quiet)
    except OSError as e:
        logger.log_error(folder_path, str(e))
        if log_file:
            logger.save(log_file)
            print(f"📝 Partial log saved: {log_file.name}")
        raise
    finally:
        # Clear global references
        _current_logger = None
        _current_log_file = None
        _current_undo_script = None

    # Save logs and generate undo script
    if log_file and undo_script:
        logger.save(log_file)
        logger.generate_undo_script(undo_script)
        print(f"📝 Change log saved: {log_file.name}")
        if undo_script.exists():
            print(f"↩️  Undo script saved: {undo_script.name}")

    # Summary
    print(f"\n{'='*50}")
    print(f"📊 Summary")
    print(f"{'='*50}")
    if command in ('extract', 'both'):
        print(f"   📦 Extracted: {extracted}")
        print(f"   🧹 Folders removed: {logger.count('remove') if not dry_run else '-'}")
    if command in ('rename', 'both'):
        print(f"   ✅ Renamed: {renamed}")
        print(f"   ⏭️  Skipped: {skipped}")
        print(f"   ❌ Failed: {failed}")

    if dry_run:
        print(f"\n💡 This was a DRY RUN. Run without --dry-run to actually change files.")

    print("\nComplete!")
    return logger


class CleanerArgumentParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def add_common_flags(parser: argparse.ArgumentParser, default: Any = False):
    """Flags accepted both before the directory and after the subcommand."""
    parser.add_argument(
        '--dry-run', '-d',
        action='store_true',
        default=default,
        help='Preview changes without touching any files'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        default=default,
        help='Show detailed output for each file'
    )

    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        default=default,
        help='Minimal output, only the summary and errors'
    )

    parser.add_argument(
        '--log',
        action='store_true',
        default=default,
        help='Write a JSON change log and an undo script into the folder'
    )

    parser.add_argument(
        '--pause',
        action='store_true',
        default=default,
        help='Wait for Enter before exiting'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = CleanerArgumentParser(
        prog='music_cleaner',
        description="Move nested music files to the folder root and rename them from their tags",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  music_cleaner ~/Music extract flac,mp3,webm
  music_cleaner ~/Music rename
  music_cleaner --dry-run ./my_music both flac
  music_cleaner ./my_music extract flac --dry-run
  MUSIC_CLEANER_EXTENSIONS=flac music_cleaner ./music extract
        """
    )
    add_common_flags(parser)

    parser.add_argument(
        'directory',
        help='Music folder to clean in-place'
    )

    # Subcommand flags only override when given
    common = CleanerArgumentParser(add_help=False)
    add_common_flags(common, default=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(dest='command', metavar='subcommand')
    subparsers.required = True

    extensions_help = f'Comma separated list, e.g. flac,mp3,webm (default: ${EXTENSIONS_ENV})'

    extract_parser = subparsers.add_parser(
        'extract',
        parents=[common],
        help='Copy nested files with matching extensions to root, delete subfolders'
    )
    extract_parser.add_argument('extensions', nargs='?', help=extensions_help)

    subparsers.add_parser(
        'rename',
        parents=[common],
        help='Rename root files to "Title - Artist.ext" using tag metadata'
    )

    both_parser = subparsers.add_parser('both', parents=[common], help='Extract then rename')
    both_parser.add_argument('extensions', nargs='?', help=extensions_help)

    return parser


def pause():
    input("Press Enter to continue...")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Register signal handler
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    folder_path = Path(args.directory).resolve()

    # Validate folder
    if not folder_path.exists():
        print(f"Error: Folder does not exist: {folder_path}")
        parser.print_usage()
        sys.exit(1)

    if not folder_path.is_dir():
        print(f"Error: Path is not a directory: {folder_path}")
        parser.print_usage()
        sys.exit(1)

    extensions: Set[str] = set()
    if args.command in ('extract', 'both'):
        extensions = parse_extensions(getattr(args, 'extensions', None) or os.getenv(EXTENSIONS_ENV))
        if not extensions:
            print("Error: No file extensions specified (example: flac,mp3,webm)")
            parser.print_usage()
            sys.exit(1)

    # Run cleaner
    try:
        clean_music(folder_path, args.command, extensions, args.dry_run,
                    args.verbose, quiet=args.quiet, write_log=args.log)
    except OSError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.pause:
        pause()

    return 0


if __name__ == "__main__":
    sys.exit(main())
