import os
import re
from datetime import datetime
from pathlib import Path
from typing import List

from .config import SYNC_DEBUG
from .errors import SyncError
from .release import CHECKSUM_RE, SENTINEL_TIMESTAMP, FileEntry, ReleaseSnapshot

SECTION_RE = re.compile(r"[A-Za-z0-9]+")


class OutputError(SyncError):
    pass


def ensure_dir(folder: Path) -> Path:
    try:
        folder.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OutputError(f"Could not create the directory {folder}: {e}") from e
    return folder


def set_timestamp(path: Path, timestamp: datetime):
    if timestamp == SENTINEL_TIMESTAMP:
        return
    ts = timestamp.timestamp()
    os.utime(path, (ts, ts))


def write_file(path: Path, data: bytes, timestamp: datetime) -> bool:
    """
    Writes data to path via a temporary sibling and a rename, then stamps it
    with the snapshot time. Identical existing content is left in place.
    Returns True when the file content was (re)written.
    """
    ensure_dir(path.parent)
    try:
        if path.is_file() and path.stat().st_size == len(data) and path.read_bytes() == data:
            if SYNC_DEBUG:
                print(f"unchanged {path}", flush=True)
            set_timestamp(path, timestamp)
            return False

        print(f"writing {path}", flush=True)
        tmp_path = path.with_name('._syncing_.' + path.name)
        try:
            with tmp_path.open('wb') as f:
                f.write(data)
            set_timestamp(tmp_path, timestamp)
            tmp_path.replace(path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
    except OSError as e:
        raise OutputError(f"Cannot write {path}: {e}") from e
    return True


def output_path(root: Path, rel: str) -> Path:
    """root/rel, refusing any path that resolves outside root."""
    path = root / rel
    base = root.resolve()
    resolved = path.resolve()
    if resolved == base or base not in resolved.parents:
        raise OutputError(f"Refusing to write {rel!r} outside {root}")
    return path


def write_by_hash(folder: Path, entry: FileEntry, data: bytes, timestamp: datetime) -> List[Path]:
    """One copy per checksum type under folder/by-hash/<type>/<checksum>."""
    written = []
    for checksum_type, checksum in zip(entry.checksum_types, entry.checksums):
        if not SECTION_RE.fullmatch(checksum_type) or not CHECKSUM_RE.fullmatch(checksum):
            raise OutputError(f"Invalid by-hash name {checksum_type}/{checksum}")
        out_file = folder / "by-hash" / checksum_type / checksum
        write_file(out_file, data, timestamp)
        written.append(out_file)
    return written


def write_release_tree(folder: Path, snapshot: ReleaseSnapshot) -> List[Path]:
    """Release plus whichever of Release.gpg and InRelease were fetched."""
    written = []
    for name, data in (("Release", snapshot.raw),
                       ("Release.gpg", snapshot.signature),
                       ("InRelease", snapshot.inline_signature)):
        if not data:
            continue
        out_file = folder / name
        write_file(out_file, data, snapshot.timestamp)
        written.append(out_file)
    return written
