import hashlib
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional, Tuple

from .config import SYNC_DEBUG

# Mapping from Release checksum section names (lowercased) to hashlib constructors
HASH_MAPPING = {
    "md5sum": hashlib.md5,
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

# Stand-in for a missing or unparsable Date header; loses against any real date
SENTINEL_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)

CHECKSUM_RE = re.compile(r"[0-9a-fA-F]+")


class ReleaseParseError(ValueError):
    """The Release file is structurally broken and must be discarded."""


def compute_checksum(checksum_type: str, data: bytes) -> Optional[str]:
    hash_func = HASH_MAPPING.get(checksum_type.lower())
    if hash_func is None:
        return None
    return hash_func(data).hexdigest()


def is_safe_path(path: str) -> bool:
    """A relative path with no empty, '.' or '..' components."""
    if path.startswith("/"):
        return False
    return all(part not in ("", ".", "..") for part in path.split("/"))


def checksum_matches(checksum_type: str, expected: str, data: bytes) -> bool:
    """Unknown checksum types never match."""
    actual = compute_checksum(checksum_type, data)
    return actual is not None and actual.lower() == expected.lower()


class FileEntry:
    def __init__(self, checksum: str, checksum_type: str, size: int):
        # index-aligned: checksums[i] was listed under section checksum_types[i]
        self.checksums: List[str] = [checksum]
        self.checksum_types: List[str] = [checksum_type]
        self.size = size

    def add(self, checksum: str, checksum_type: str):
        self.checksums.append(checksum)
        self.checksum_types.append(checksum_type)

    @property
    def preferred(self) -> Tuple[str, str]:
        """(checksum type, checksum) of the last-listed section."""
        return self.checksum_types[-1], self.checksums[-1]

    def verify(self, data: bytes) -> bool:
        checksum_type, checksum = self.preferred
        return len(data) == self.size and checksum_matches(checksum_type, checksum, data)

    def __repr__(self):
        return f"FileEntry(size={self.size}, checksum_types={self.checksum_types!r})"


class ReleaseSnapshot:
    """One mirror's parsed Release file."""

    def __init__(self, raw: bytes, header: Dict[str, str],
                 files: Dict[str, FileEntry], timestamp: datetime):
        self.raw = raw
        self.header = header
        self.files = files
        self.timestamp = timestamp
        self.signature = b""
        self.inline_signature = b""
        self.mirror: Optional[str] = None
        self.path: Optional[str] = None

    @property
    def by_hash(self) -> bool:
        return self.header.get("Acquire-By-Hash", "").lower() == "yes"

    @property
    def has_timestamp(self) -> bool:
        return self.timestamp != SENTINEL_TIMESTAMP

    def __repr__(self):
        return (f"ReleaseSnapshot(mirror={self.mirror!r}, timestamp={self.timestamp.isoformat()}, "
                f"files={len(self.files)})")


def parse_date(value: str) -> Optional[datetime]:
    """Parses an RFC 1123 Date header value, e.g. 'Sat, 14 Sep 2024 09:48:26 UTC'."""
    try:
        ts = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_release(data: bytes) -> ReleaseSnapshot:
    """
    Parses the content of a Release file.

    Unindented lines are 'Field: value' headers; a field with an empty value
    opens a checksum section (e.g. 'SHA256:') and the indented lines that
    follow are '<checksum> <size> <path>' records. Any malformed line rejects
    the whole file with ReleaseParseError.
    """
    header: Dict[str, str] = {}
    files: Dict[str, FileEntry] = {}
    section: Optional[str] = None
    last_field: Optional[str] = None

    text = data.decode('utf-8', errors='replace')
    for lineno, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue

        if line[0] in ' \t':
            if section is None:
                if last_field is None:
                    raise ReleaseParseError(f"line {lineno}: continuation line before any field")
                header[last_field] += "\n" + line.strip()
                continue

            parts = line.split()
            if len(parts) != 3:
                raise ReleaseParseError(f"line {lineno}: invalid {section} record {line.strip()!r}")
            checksum, size_str, filename = parts
            if not (size_str.isascii() and size_str.isdigit()):
                raise ReleaseParseError(f"line {lineno}: invalid file size {size_str!r}")
            size = int(size_str)
            if not CHECKSUM_RE.fullmatch(checksum):
                raise ReleaseParseError(f"line {lineno}: invalid checksum {checksum!r}")
            if not is_safe_path(filename):
                raise ReleaseParseError(f"line {lineno}: unsafe file path {filename!r}")

            entry = files.get(filename)
            if entry is None:
                files[filename] = FileEntry(checksum, section, size)
            elif entry.size != size:
                raise ReleaseParseError(
                    f"line {lineno}: mismatching size for {filename} ({size} vs {entry.size})")
            else:
                entry.add(checksum, section)
            continue

        key, sep, value = line.partition(':')
        key = key.strip()
        if not sep or not key:
            raise ReleaseParseError(f"line {lineno}: invalid header line {line!r}")
        value = value.strip()
        if value == "":
            section = key
            last_field = None
        else:
            section = None
            header[key] = value
            last_field = key

    timestamp = None
    if "Date" in header:
        timestamp = parse_date(header["Date"])
        if timestamp is None:
            print(f"Warning: Invalid date format {header['Date']!r} in Release file", flush=True)
    elif SYNC_DEBUG:
        print("Warning: Release file has no Date field", flush=True)

    return ReleaseSnapshot(data, header, files, timestamp or SENTINEL_TIMESTAMP)
