#!/usr/bin/env python3
"""Keep a plain-text vocabulary file in sync with an Anki deck.

File format, one note per line:

    cat::gatto
    dog::perro  #id:1700000000123

Lines without '::' are left alone (headings, comments, blank lines).
A note without an '#id:' marker is created in Anki and the marker is
appended to its line, so the next run recognises it.

Workflow:
    1. Start Anki with the AnkiConnect add-on enabled
    2. ankisync words.txt                     # Sync into deck 'sync-default'
       or: ankisync words.txt --deck Italian  # Sync into another deck
       or: ankisync words.txt --dry-run       # Show what would change
    3. Edit words.txt, run again; only changes are pushed

API usage:
    from ankisync import parse_records, reconcile, sync
    records, errors = parse_records(["cat::gatto  #id:501"])
    result = reconcile(records, [{'note_id': 501, 'front': 'cat', 'back': 'gatto'}])
    sync("words.txt", deck="Italian")
"""

import argparse
import hashlib
import os
import re
import sys
import requests
from pathlib import Path

__version__ = "0.3.0"

DEFAULT_ANKI_CONNECT_URL = "http://localhost:8765"
ANKI_CONNECT_VERSION = 6
REQUEST_TIMEOUT = 30

DEFAULT_DECK = "sync-default"
DEFAULT_NOTE_TYPE = "Basic (and reversed card)"

# Config file location
CONFIG_PATH = Path.home() / ".ankisync" / "config"

# File format
PAIR_DELIMITER = "::"
ID_MARKER = "#id:"
ID_SEPARATOR = "  "
ID_DIGITS = re.compile(r"[0-9]+")
MARKER_PATTERN = re.compile(re.escape(ID_MARKER) + r"([0-9]+)(?![0-9])")
MAX_NOTE_ID = 2**63 - 1

# Set in main() from config / environment
ANKI_CONNECT_URL = DEFAULT_ANKI_CONNECT_URL
NOTE_TYPE = DEFAULT_NOTE_TYPE


class AnkiConnectError(Exception):
    """AnkiConnect could not be reached or answered with an error."""


def load_user_config(path=None):
    """Read KEY=VALUE settings from ~/.ankisync/config.

    Blank lines, '#' comments and lines without '=' are ignored; values may
    be wrapped in single or double quotes. An unreadable file gives a
    warning and no settings.
    """
    path = Path(path) if path is not None else CONFIG_PATH
    if not path.is_file():
        return {}

    try:
        text = path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        print(f"Warning: Failed to load config from {path}: {e}", file=sys.stderr)
        return {}

    settings = {}
    for raw in text.splitlines():
        key, sep, value = raw.strip().partition('=')
        if not sep or not key or key.startswith('#'):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
            value = value[1:-1]
        settings[key.strip()] = value
    return settings


def get_setting(name, default, config=None):
    """Resolve a setting: environment first, then config file, then default."""
    if config is None:
        config = load_user_config()
    return os.getenv(name) or config.get(name) or default


def content_hash(front, back):
    """Generate hash of note content for content matching."""
    content = f"{front.strip()}{PAIR_DELIMITER}{back.strip()}"
    return hashlib.sha256(content.encode('utf-8')).hexdigest()[:16]


def split_pair(text):
    """Split pair text on the delimiter.

    Returns:
        tuple: (front, back), both trimmed

    Raises:
        ValueError: If the delimiter count is not exactly one or a side is empty
    """
    parts = text.split(PAIR_DELIMITER)
    if len(parts) < 2:
        raise ValueError("No delimiter")
    if len(parts) > 2:
        raise ValueError("Too many delimiters")

    front, back = parts[0].strip(), parts[1].strip()
    if not front or not back:
        raise ValueError("Empty pair")
    return front, back


def parse_records(lines):
    """Parse file lines into local records.

    Lines without the pair delimiter are skipped. Bad lines are collected,
    never raised, so one broken line doesn't stop the rest of the file.

    Args:
        lines: File content split into lines (no line endings)

    Returns:
        tuple: (records, errors) where records are dicts with keys
            front, back, note_id, line_no and errors is a list of
            (line_no, message)
    """
    records = []
    errors = []
    seen_ids = set()

    for line_no, line in enumerate(lines, 1):
        if PAIR_DELIMITER not in line:
            continue

        text = line
        note_id = 0
        if ID_MARKER in line:
            text, _, raw_id = line.partition(ID_MARKER)
            raw_id = raw_id.strip()
            if ID_DIGITS.fullmatch(raw_id):
                note_id = int(raw_id)
            if not 0 < note_id <= MAX_NOTE_ID:
                errors.append((line_no, f"Bad id '{raw_id}'"))
                continue

        try:
            front, back = split_pair(text)
        except ValueError as e:
            errors.append((line_no, str(e)))
            continue

        if note_id and note_id in seen_ids:
            errors.append((line_no, f"Duplicate id {note_id}"))
            continue

        if note_id:
            seen_ids.add(note_id)
        records.append({
            'front': front,
            'back': back,
            'note_id': note_id,
            'line_no': line_no,
        })

    return records, errors


def reconcile(local, remote):
    """Classify local records against a remote deck snapshot.

    Matching runs on two indexes (identifier and content), so the outcome
    doesn't depend on the order AnkiConnect returned the notes in:

    1. A local identifier found remotely is either unchanged (same content)
       or updated (local content wins).
    2. A record with no identifier, or one unknown remotely, adopts the
       identifier of an unclaimed remote note with identical content.
    3. What is left is new (no identifier) or a conflict (stale identifier).

    Args:
        local: Local records from parse_records(); note_id is set in place
            for records that get relinked
        remote: Remote records (dicts with note_id, front, back)

    Returns:
        dict: Partition with keys unchanged, relinked, updated, new, conflict

    Raises:
        AssertionError: If an identifier appears twice in the snapshot or a
            remote note would be matched by two local records
    """
    remote_by_id = {}
    remote_by_hash = {}
    for note in remote:
        if note['note_id'] in remote_by_id:
            raise AssertionError(f"Note {note['note_id']} appears twice in the remote snapshot")
        remote_by_id[note['note_id']] = note
        h = content_hash(note['front'], note['back'])
        remote_by_hash.setdefault(h, []).append(note['note_id'])

    result = {
        'unchanged': [],
        'relinked': [],
        'updated': [],
        'new': [],
        'conflict': [],
    }
    claimed = set()
    unsettled = []

    for record in local:
        note = remote_by_id.get(record['note_id']) if record['note_id'] else None
        if note is None:
            unsettled.append(record)
            continue

        if note['note_id'] in claimed:
            raise AssertionError(f"Note {note['note_id']} matched more than once")
        claimed.add(note['note_id'])

        if (record['front'] == note['front'].strip()
                and record['back'] == note['back'].strip()):
            result['unchanged'].append(record)
        else:
            result['updated'].append(record)

    for record in unsettled:
        candidates = sorted(
            note_id for note_id in remote_by_hash.get(content_hash(record['front'], record['back']), [])
            if note_id not in claimed
        )
        if candidates:
            previous_id = record['note_id']
            record['note_id'] = candidates[0]
            claimed.add(candidates[0])
            result['unchanged'].append(record)
            result['relinked'].append((record, previous_id))
        elif record['note_id'] == 0:
            result['new'].append(record)
        else:
            result['conflict'].append((record, f"id {record['note_id']} not found remotely"))

    return result


def find_marker_lines(lines, note_id):
    """Return indexes of lines whose marker carries exactly note_id."""
    matches = []
    for idx, line in enumerate(lines):
        match = MARKER_PATTERN.search(line)
        if match and int(match.group(1)) == note_id:
            matches.append(idx)
    return matches


def find_pair_line(lines, front, back):
    """Return index of the first unmarked line holding this pair, or None."""
    for idx, line in enumerate(lines):
        if PAIR_DELIMITER not in line or ID_MARKER in line:
            continue
        try:
            if split_pair(line) == (front, back):
                return idx
        except ValueError:
            continue
    return None


def rewrite_identifier(lines, record, previous_id):
    """Patch the identifier suffix of the line holding this record.

    Args:
        lines: File lines, modified in place
        record: Local record carrying its new note_id
        previous_id: Identifier the line carries now (0 if it has none)

    Returns:
        bool: True if a line was patched
    """
    if previous_id:
        matches = find_marker_lines(lines, previous_id)
        if len(matches) != 1:
            found = "No line" if not matches else f"{len(matches)} lines"
            print(f"Warning: {found} with {ID_MARKER}{previous_id} in the file, "
                  f"'{record['front']}' left unpatched", file=sys.stderr)
            return False
        idx = matches[0]
    else:
        idx = find_pair_line(lines, record['front'], record['back'])
        if idx is None:
            print(f"Warning: Couldn't find '{record['front']}{PAIR_DELIMITER}{record['back']}' "
                  f"in the file", file=sys.stderr)
            return False

    text = lines[idx].split(ID_MARKER)[0].rstrip()
    lines[idx] = f"{text}{ID_SEPARATOR}{ID_MARKER}{record['note_id']}"
    print(f"  Line {idx + 1}: {lines[idx]}")
    return True


def read_lines(file_path):
    """Read a file into lines, remembering each line's own ending.

    Only '\n' and '\r\n' end a line; any other control or separator
    character stays part of the line text.

    Returns:
        tuple: (lines, endings) of equal length, endings holding
            '\n', '\r\n' or '' for a last line without one

    Raises:
        OSError: If the file can't be read or isn't valid UTF-8
    """
    try:
        with open(file_path, 'r', encoding='utf-8', newline='') as f:
            content = f.read()
    except UnicodeDecodeError as e:
        raise OSError(f"{file_path} is not valid UTF-8: {e}") from e

    lines = []
    endings = []
    pieces = content.split('\n')
    for piece in pieces[:-1]:
        if piece.endswith('\r'):
            lines.append(piece[:-1])
            endings.append('\r\n')
        else:
            lines.append(piece)
            endings.append('\n')
    if pieces[-1]:
        lines.append(pieces[-1])
        endings.append('')
    return lines, endings


def write_lines(file_path, lines, endings):
    """Write lines back, each with the ending it was read with."""
    with open(file_path, 'w', encoding='utf-8', newline='') as f:
        f.write(''.join(line + ending for line, ending in zip(lines, endings)))


def anki_invoke(action, **params):
    """Send a request to AnkiConnect.

    Args:
        action: AnkiConnect action name (findNotes, notesInfo, ...)
        **params: Action parameters

    Returns:
        The 'result' member of the response

    Raises:
        AnkiConnectError: On connection failure, HTTP error, an API error or
            a response that isn't an AnkiConnect envelope
    """
    payload = {"action": action, "version": ANKI_CONNECT_VERSION, "params": params}

    try:
        response = requests.post(ANKI_CONNECT_URL, json=payload, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.ConnectionError as e:
        raise AnkiConnectError(
            f"Cannot connect to AnkiConnect at {ANKI_CONNECT_URL}. "
            f"Is Anki running with AnkiConnect enabled?") from e
    except requests.exceptions.RequestException as e:
        raise AnkiConnectError(f"{action} failed: {e}") from e
    except ValueError as e:
        raise AnkiConnectError(f"{action}: response is not JSON") from e

    if not isinstance(data, dict) or 'result' not in data or 'error' not in data:
        raise AnkiConnectError(f"{action}: malformed response {data!r}")
    if data['error'] is not None:
        raise AnkiConnectError(f"{action}: {data['error']}")
    return data['result']


def find_note_ids(deck):
    """Fetch identifiers of all notes in a deck."""
    note_ids = anki_invoke("findNotes", query=f'deck:"{deck}"')
    if not isinstance(note_ids, list):
        raise AnkiConnectError(f"findNotes: expected a list, got {note_ids!r}")
    return note_ids


def notes_info(note_ids):
    """Fetch Front/Back fields for the given note identifiers.

    Returns:
        List of dicts with keys: note_id, front, back
    """
    if not note_ids:
        return []

    notes = anki_invoke("notesInfo", notes=list(note_ids))
    records = []
    for note in notes or []:
        try:
            fields = note['fields']
            records.append({
                'note_id': note['noteId'],
                'front': fields['Front']['value'],
                'back': fields['Back']['value'],
            })
        except (KeyError, TypeError) as e:
            raise AnkiConnectError(f"notesInfo: note without Front/Back fields: {note!r}") from e
    return records


def fetch_remote_records(deck):
    """Fetch the current snapshot of a deck."""
    return notes_info(find_note_ids(deck))


def ensure_deck(deck):
    """Create the deck if it doesn't exist (no-op otherwise)."""
    return anki_invoke("createDeck", deck=deck)


def add_notes(records, deck):
    """Create notes in a deck.

    Args:
        records: Local records to create
        deck: Target deck name

    Returns:
        List of new note identifiers, in the order of records

    Raises:
        AnkiConnectError: If AnkiConnect didn't return an identifier for
            every record (e.g. it refused a duplicate)
    """
    if not records:
        return []

    notes = []
    for record in records:
        notes.append({
            "deckName": deck,
            "modelName": NOTE_TYPE,
            "fields": {
                "Front": record['front'],
                "Back": record['back'],
            },
            "options": {
                "allowDuplicate": False,
                "duplicateScope": "deck",
            },
            "tags": [],
        })

    note_ids = anki_invoke("addNotes", notes=notes)
    if not isinstance(note_ids, list):
        raise AnkiConnectError(f"addNotes: expected a list, got {note_ids!r}")
    if len(note_ids) < len(records):
        raise AnkiConnectError(
            f"addNotes returned {len(note_ids)} ids for {len(records)} notes")
    missing = [r['front'] for r, note_id in zip(records, note_ids) if not note_id]
    if missing:
        raise AnkiConnectError(f"addNotes refused {len(missing)} note(s): {', '.join(missing)}")
    return note_ids[:len(records)]


def update_note(record):
    """Overwrite Front/Back of an existing note with local content."""
    return anki_invoke("updateNoteFields", note={
        "id": record['note_id'],
        "fields": {
            "Front": record['front'],
            "Back": record['back'],
        },
    })


def sync(file_path, deck=DEFAULT_DECK, dry_run=False):
    """Sync a vocabulary file with an Anki deck (local file wins).

    Creates notes for new lines, updates notes whose content changed and
    writes new identifiers back into the file. Remote notes missing from
    the file are left alone.

    Args:
        file_path: Path to the vocabulary file
        deck: Anki deck name
        dry_run: If True, only report what would change

    Returns:
        dict: Reconciliation result (see reconcile())

    Raises:
        OSError: If the file can't be read or written
        AnkiConnectError: If any AnkiConnect request fails
        AssertionError: If the match graph is inconsistent
    """
    lines, endings = read_lines(file_path)

    records, errors = parse_records(lines)
    for line_no, message in errors:
        print(f"Line {line_no}: {message}", file=sys.stderr)
    print(f"✓ Parsed {len(records)} notes ({len(errors)} lines rejected)")

    print(f"Fetching notes from deck '{deck}'...")
    remote = fetch_remote_records(deck)
    print(f"✓ Fetched {len(remote)} notes")

    result = reconcile(records, remote)

    for record, reason in result['conflict']:
        print(f"Warning: line {record['line_no']} '{record['front']}': {reason}", file=sys.stderr)
    for record, previous_id in result['relinked']:
        print(f"  Restoring note id {record['note_id']} on line {record['line_no']}")

    print(f"\nChanges to push:")
    print(f"  Create: {len(result['new'])}")
    print(f"  Update: {len(result['updated'])}")
    print(f"  Relink: {len(result['relinked'])}")

    if dry_run:
        print("\nDry run, nothing changed")
        return result

    for record in result['updated']:
        update_note(record)
        print(f"  ✓ Updated {record['note_id']}: {record['front']}")

    if result['new']:
        ensure_deck(deck)
        new_ids = add_notes(result['new'], deck)
        for record, note_id in zip(result['new'], new_ids):
            record['note_id'] = note_id
            print(f"  ✓ Created {note_id}: {record['front']}")

    patches = list(result['relinked']) + [(record, 0) for record in result['new']]
    patched = sum(1 for record, previous_id in patches
                  if rewrite_identifier(lines, record, previous_id))

    if patched:
        write_lines(file_path, lines, endings)
        print(f"\nℹ Updated {file_path} with {patched} note id(s)")

    if not (result['new'] or result['updated'] or patched):
        print("\n✓ Everything up to date")
    else:
        print(f"\n✓ Synced: {len(result['new'])} created, {len(result['updated'])} updated, "
              f"{len(result['unchanged'])} unchanged")
    return result


def parse_args(argv=None, default_deck=DEFAULT_DECK):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Sync a '::' vocabulary file with an Anki deck")
    parser.add_argument("file", help="File to sync (one 'front::back' pair per line)")
    parser.add_argument("-d", "--deck", default=default_deck,
                        help=f"Deck to use (default: {default_deck})")
    parser.add_argument("--dry-run", action="store_true",
                        help="Show what would change without touching Anki or the file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None):
    global ANKI_CONNECT_URL, NOTE_TYPE
    config = load_user_config()
    ANKI_CONNECT_URL = get_setting("ANKI_CONNECT_URL", DEFAULT_ANKI_CONNECT_URL, config)
    NOTE_TYPE = get_setting("ANKI_NOTE_TYPE", DEFAULT_NOTE_TYPE, config)

    args = parse_args(argv, default_deck=get_setting("ANKI_DEFAULT_DECK", DEFAULT_DECK, config))

    try:
        sync(args.file, deck=args.deck, dry_run=args.dry_run)
    except (OSError, AnkiConnectError, AssertionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
