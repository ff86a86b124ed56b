import bz2
import concurrent.futures
import gzip
import lzma
import traceback
import zlib
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import PARALLEL_DOWNLOADS, SYNC_DEBUG
from .release import FileEntry, ReleaseSnapshot, compute_checksum
from .transport import Resolver, TransportError

# Compressed variants in order of preference as the source of an uncompressed companion
COMPRESSION_SUFFIXES = (".gz", ".xz", ".bz2")

DECOMPRESSORS = {
    ".gz": gzip.decompress,
    ".xz": lzma.decompress,
    ".bz2": bz2.decompress,
}


class DownloadOutcome:
    def __init__(self, path: str, data: Optional[bytes] = None, mirror: Optional[str] = None,
                 tried: Optional[List[str]] = None, reason: Optional[str] = None):
        self.path = path
        self.data = data
        self.mirror = mirror
        self.tried = tried or []
        self.reason = reason

    @property
    def ok(self) -> bool:
        return self.data is not None

    def __repr__(self):
        state = f"from {self.mirror}" if self.ok else f"failed ({self.reason})"
        return f"DownloadOutcome({self.path!r}, {state}, tried={len(self.tried)})"


def mirror_trial_order(winner: str, mirrors: Sequence[str]) -> List[str]:
    """The winning mirror first, then every other mirror in list order."""
    order = [winner]
    for m in mirrors:
        if m not in order:
            order.append(m)
    return order


def fetch_with_checksum(path: str, entry: FileEntry, mirrors: Sequence[str],
                        prefix: str, resolver: Resolver) -> DownloadOutcome:
    """
    Tries each mirror in turn for prefix/path and returns the first copy whose
    size and last-listed checksum match the entry.
    """
    checksum_type, expected = entry.preferred
    outcome = DownloadOutcome(path)
    for i, mirror in enumerate(mirrors):
        url = f"{mirror}{prefix}/{path}"
        outcome.tried.append(mirror)
        print(f"getting {url}", flush=True)
        try:
            data = resolver.fetch(url)
        except TransportError as e:
            outcome.reason = f"transport: {e}"
            print(f"  {outcome.reason}, trying a different mirror", flush=True)
            continue

        if len(data) != entry.size:
            outcome.reason = f"size-mismatch: expected {entry.size}, got {len(data)}"
        else:
            actual = compute_checksum(checksum_type, data)
            if actual is not None and actual.lower() == expected.lower():
                if i > 0:
                    print(f"  {path} verified from fallback mirror {mirror}", flush=True)
                elif SYNC_DEBUG:
                    print(f"  verified {path} using {checksum_type}", flush=True)
                outcome.data = data
                outcome.mirror = mirror
                outcome.reason = None
                return outcome
            if actual is None:
                outcome.reason = f"checksum-mismatch: unsupported checksum type {checksum_type}"
            else:
                outcome.reason = f"checksum-mismatch: {checksum_type} expected {expected}, got {actual}"
        print(f"  {outcome.reason}, trying a different mirror", flush=True)

    print(f"ERROR: Failed to fetch {path} from {len(outcome.tried)} mirrors ({outcome.reason})", flush=True)
    return outcome


def compression_suffix(path: str) -> Optional[str]:
    for suffix in COMPRESSION_SUFFIXES:
        if path.endswith(suffix):
            return suffix
    return None


def select_files(snapshot: ReleaseSnapshot, upper: str) -> List[str]:
    """
    Paths listed under the upper directory, leaving out uncompressed files
    that also have a compressed variant listed.
    """
    prefix = upper.strip("/") + "/" if upper.strip("/") else ""
    selected = []
    for path in sorted(snapshot.files):
        if not path.startswith(prefix):
            continue
        if compression_suffix(path) is None and \
                any(path + suffix in snapshot.files for suffix in COMPRESSION_SUFFIXES):
            continue
        selected.append(path)
    return selected


def companion_source(path: str, files: Dict[str, FileEntry]) -> Optional[str]:
    """
    For a compressed path, the uncompressed name it should be expanded to,
    when it is the preferred compressed variant of that name.
    """
    suffix = compression_suffix(path)
    if suffix is None:
        return None
    plain = path[:-len(suffix)]
    for candidate in COMPRESSION_SUFFIXES:
        if plain + candidate in files:
            return plain if candidate == suffix else None
    return None


def decompress(path: str, data: bytes) -> bytes:
    suffix = compression_suffix(path)
    if suffix is None:
        raise ValueError(f"{path} has no known compression suffix")
    return DECOMPRESSORS[suffix](data)


def expand_companion(path: str, data: bytes, snapshot: ReleaseSnapshot) -> Optional[Tuple[str, bytes]]:
    """
    Returns (uncompressed path, bytes) for a verified compressed file, or None.
    A listed uncompressed entry must match the expanded bytes; an unlisted one
    is trusted through the compressed original.
    """
    plain = companion_source(path, snapshot.files)
    if plain is None:
        return None
    try:
        expanded = decompress(path, data)
    except (OSError, EOFError, lzma.LZMAError, zlib.error, ValueError) as e:
        print(f"ERROR: Cannot decompress {path}: {e}", flush=True)
        return None
    entry = snapshot.files.get(plain)
    if entry is not None and not entry.verify(expanded):
        print(f"ERROR: Decompressed {path} does not match the listed checksum for {plain}", flush=True)
        return None
    return plain, expanded


def download_files(paths: Sequence[str], snapshot: ReleaseSnapshot, mirrors: Sequence[str],
                   prefix: str, resolver: Resolver,
                   on_success: Callable[[DownloadOutcome], None],
                   parallel: int = PARALLEL_DOWNLOADS) -> List[DownloadOutcome]:
    """
    Fetches every path, calling on_success with each verified outcome.
    Returns the failed outcomes.
    """
    if not paths:
        return []
    order = mirror_trial_order(snapshot.mirror, mirrors)
    failed: List[DownloadOutcome] = []

    def _one(path: str) -> DownloadOutcome:
        return fetch_with_checksum(path, snapshot.files[path], order, prefix, resolver)

    max_workers = max(1, min(parallel, len(paths)))
    if max_workers == 1:
        for path in paths:
            outcome = _one(path)
            if outcome.ok:
                on_success(outcome)
            else:
                failed.append(outcome)
        return failed

    print(f"Starting parallel download of {len(paths)} files with {max_workers} workers", flush=True)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_path = {executor.submit(_one, path): path for path in paths}
        processed_count = 0
        for future in concurrent.futures.as_completed(future_to_path):
            path = future_to_path[future]
            processed_count += 1
            try:
                outcome = future.result()
            except Exception as e:
                print(f"Download task for {path} generated an unhandled exception: {e}", flush=True)
                if SYNC_DEBUG:
                    traceback.print_exc()
                outcome = DownloadOutcome(path, reason=f"exception: {e}")
            if outcome.ok:
                on_success(outcome)
            else:
                failed.append(outcome)
            if processed_count % 100 == 0 or processed_count == len(paths):
                progress = (processed_count / len(paths)) * 100
                print(f"Download progress: {processed_count}/{len(paths)} ({progress:.1f}%) completed. "
                      f"Failures: {len(failed)}", flush=True)
    return failed
