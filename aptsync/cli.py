import argparse
import os
import time
import traceback
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from . import __version__
from .config import PARALLEL_DOWNLOADS, RACE_STAGGER, REPO_SIZE_FILE, SYNC_DEBUG
from .errors import SyncError
from .fetch import (DownloadOutcome, companion_source, download_files, expand_companion,
                    fetch_with_checksum, mirror_trial_order, select_files)
from .output import ensure_dir, output_path, write_by_hash, write_file, write_release_tree
from .race import race_mirrors
from .release import ReleaseSnapshot
from .signature import Keyring, load_keyring
from .transport import Resolver


def check_args(prop: str, lst: List[str]):
    for s in lst:
        if len(s) == 0 or ' ' in s:
            raise ValueError(f"Invalid item in {prop}: {repr(s)}")


def read_mirrors(source: str) -> List[str]:
    """
    Mirrors from a file (one per line, '#' starts a comment) or from a
    comma-separated list of URLs or directories.
    """
    if os.path.isfile(source):
        with open(source, 'r', encoding='utf-8') as f:
            items = [line.split('#', 1)[0].strip() for line in f]
        items = [i for i in items if i]
    elif ',' in source or '://' in source or os.path.isdir(source):
        items = [i.strip() for i in source.split(',')]
    else:
        raise OSError(f"mirror list {source} not found")
    check_args("mirrors", items)
    mirrors = []
    for m in items:
        m = m.rstrip('/')
        if m not in mirrors:
            mirrors.append(m)
    return mirrors


def split_repo_path(repo: str) -> Tuple[str, str]:
    """
    Splits 'dists/stable/main/binary-amd64' into the directory holding the
    Release file ('/dists/stable') and the file table prefix ('main/binary-amd64').
    """
    parts = [p for p in repo.strip('/').split('/') if p]
    if len(parts) < 2:
        raise SyncError(f"repo path {repo!r} must have at least two components, e.g. dists/stable")
    return "/" + "/".join(parts[:2]), "/".join(parts[2:])


class SyncResult:
    def __init__(self, snapshot: ReleaseSnapshot):
        self.snapshot = snapshot
        self.written: List[Path] = []
        self.failed: List[DownloadOutcome] = []
        self.bytes_written = 0


def sync(repo: str, mirrors: Sequence[str], output: Path, keyring: Optional[Keyring] = None,
         insecure: bool = False, tree: bool = False, resolver: Optional[Resolver] = None,
         stagger: float = RACE_STAGGER, parallel: int = PARALLEL_DOWNLOADS) -> SyncResult:
    """Races the mirrors for the newest Release and mirrors the repo directory from it."""
    if resolver is None:
        resolver = Resolver()
    release_dir, upper = split_repo_path(repo)

    snapshot = race_mirrors(mirrors, release_dir + "/Release", resolver,
                            keyring=keyring, insecure=insecure, stagger=stagger)
    print(f"Acquire-By-Hash is {snapshot.by_hash}", flush=True)

    out_dir = output / repo.strip('/') if tree else output
    ensure_dir(out_dir)
    result = SyncResult(snapshot)

    paths = select_files(snapshot, upper)
    if not paths:
        print("Note: Make sure your \"repo\" is set to the child path under the mirror URL "
              "with the file containing Packages.gz", flush=True)

    def _target(path: str) -> Path:
        return output_path(out_dir, path[len(upper) + 1:] if upper else path)

    def _store(outcome: DownloadOutcome):
        out_file = _target(outcome.path)
        write_file(out_file, outcome.data, snapshot.timestamp)
        result.written.append(out_file)
        result.bytes_written += len(outcome.data)
        if snapshot.by_hash:
            write_by_hash(out_file.parent, snapshot.files[outcome.path], outcome.data, snapshot.timestamp)

        # derived companions are never hash-addressed
        companion = expand_companion(outcome.path, outcome.data, snapshot)
        if companion is not None:
            plain, expanded = companion
        else:
            # a listed uncompressed file that could not be derived is fetched itself
            plain = companion_source(outcome.path, snapshot.files)
            if plain is None or plain not in snapshot.files:
                return
            fetched = fetch_with_checksum(plain, snapshot.files[plain],
                                          mirror_trial_order(snapshot.mirror, mirrors), release_dir, resolver)
            if not fetched.ok:
                result.failed.append(fetched)
                return
            expanded = fetched.data
        plain_file = _target(plain)
        write_file(plain_file, expanded, snapshot.timestamp)
        result.written.append(plain_file)
        result.bytes_written += len(expanded)

    failed = download_files(paths, snapshot, mirrors, release_dir, resolver,
                            _store, parallel=parallel)
    if paths and len(failed) == len(paths):
        raise SyncError(f"all {len(paths)} files failed to download")
    result.failed = failed + result.failed
    for outcome in result.failed:
        print(f"Skipped {outcome.path}: tried {', '.join(outcome.tried)} ({outcome.reason})", flush=True)

    if tree:
        result.written.extend(write_release_tree(output / release_dir.strip('/'), snapshot))
    return result


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f"Debian Get Repo Metadata, Version: {__version__}")
    parser.add_argument("--repo", default="dists/stable/main/binary-amd64",
                        help="Repo path to use in fetching")
    parser.add_argument("--mirrors", default="mirrorlist.txt",
                        help="Mirror / directory list of prefixes to use (file or comma-separated list)")
    parser.add_argument("--output", type=Path, default=Path("."),
                        help="Path to put the repodata files")
    parser.add_argument("--insecure", action='store_true', help="Skip signature checks")
    parser.add_argument("--tree", action='store_true',
                        help="Make repo tree (recommended, provides gpg and InRelease files)")
    parser.add_argument("--keyring", type=Path, default=Path("keys/"),
                        help="Use keyring for verifying, keyring.gpg or keys/ directory")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        mirrors = read_mirrors(args.mirrors)
    except (OSError, ValueError) as e:
        parser.error(str(e))
    if not mirrors:
        parser.error(f"no mirrors found in {args.mirrors}")

    print(f"Mirrors: {mirrors}", flush=True)
    print(f"Repo: {args.repo}", flush=True)
    print(f"Output: {args.output}", flush=True)

    start_time = time.time()
    keyring = None
    try:
        if not args.insecure:
            keyring = load_keyring(args.keyring)
        result = sync(args.repo, mirrors, args.output, keyring=keyring,
                      insecure=args.insecure, tree=args.tree)
    except SyncError as e:
        print(f"ERROR: {e}", flush=True)
        if SYNC_DEBUG:
            traceback.print_exc()
        return 1
    finally:
        if keyring is not None:
            keyring.close()

    total_duration = time.time() - start_time
    print(f"Total sync time: {total_duration:.2f} seconds.", flush=True)
    print(f"Wrote {len(result.written)} files, {len(result.failed)} skipped.", flush=True)

    if len(REPO_SIZE_FILE) > 0:
        try:
            with open(REPO_SIZE_FILE, "a") as fd:
                fd.write(f"\n{time.strftime('%Y-%m-%d %H:%M:%S')} {args.output} size: +{result.bytes_written}")
        except OSError as e:
            print(f"Error writing repository size to {REPO_SIZE_FILE}: {e}", flush=True)
    return 0
