import concurrent.futures
import threading
import time
import traceback
from typing import List, Optional, Sequence

from .config import RACE_STAGGER, SYNC_DEBUG
from .errors import SyncError
from .release import ReleaseParseError, ReleaseSnapshot, parse_release
from .signature import Keyring, SignatureError, verify_detached_signature
from .transport import Resolver, TransportError


class RaceError(SyncError):
    pass


class MirrorRace:
    """
    Holds the best Release snapshot seen so far. Every mirror worker parses
    its Release file and offers it through probe(); adoption is a
    compare-and-adopt under one lock, so the winner is the strictly newest
    verified snapshot whatever order the workers finish in.
    """

    def __init__(self, release_path: str, resolver: Resolver,
                 keyring: Optional[Keyring] = None, insecure: bool = False):
        if keyring is None and not insecure:
            raise RaceError("a keyring is required unless running insecure")
        self.release_path = release_path
        self.resolver = resolver
        self.keyring = keyring
        self.insecure = insecure
        self.best: Optional[ReleaseSnapshot] = None
        self._lock = threading.Lock()

    def probe(self, index: int, mirror: str) -> bool:
        """Returns True when this mirror's snapshot was adopted."""
        release_url = mirror + self.release_path
        print(f"{index} Fetching {release_url}", flush=True)
        try:
            raw = self.resolver.fetch(release_url)
        except TransportError as e:
            print(f"Error fetching {release_url}: {e}", flush=True)
            return False
        try:
            snapshot = parse_release(raw)
        except ReleaseParseError as e:
            print(f"Error in decoding Release file {release_url}: {e}", flush=True)
            return False

        print(f"  found timestamp {snapshot.timestamp.isoformat()} in {release_url}", flush=True)
        with self._lock:
            if self.best is not None and snapshot.timestamp <= self.best.timestamp:
                if SYNC_DEBUG:
                    print(f"  {release_url} is not newer than {self.best.path}", flush=True)
                return False
            if not self.insecure and not self._attach_signatures(snapshot, release_url):
                return False
            print("  using first" if self.best is None else "  found newer", flush=True)
            snapshot.path = release_url
            snapshot.mirror = mirror
            self.best = snapshot
            return True

    def _attach_signatures(self, snapshot: ReleaseSnapshot, release_url: str) -> bool:
        gpg_url = release_url + ".gpg"
        print(f"Fetching signature file: {gpg_url}", flush=True)
        try:
            signature = self.resolver.fetch(gpg_url)
        except TransportError as e:
            print(f"Error: cannot fetch signature for {release_url}: {e}", flush=True)
            return False
        try:
            status = verify_detached_signature(signature, snapshot.raw, self.keyring)
        except SignatureError as e:
            print(f"Error: signature check failed for {release_url} ({e.reason}): {e}", flush=True)
            return False
        print(f"GPG Verified! {gpg_url} signed by 0x{status.key_id:016X} at {status.created}", flush=True)
        snapshot.signature = signature

        inrelease_url = release_url[:-len("Release")] + "InRelease"
        try:
            snapshot.inline_signature = self.resolver.fetch(inrelease_url)
        except TransportError as e:
            if SYNC_DEBUG:
                print(f"No InRelease at {inrelease_url}: {e}", flush=True)
        return True

    def run(self, mirrors: Sequence[str], stagger: float = RACE_STAGGER) -> ReleaseSnapshot:
        if not mirrors:
            raise RaceError("mirror list is empty")
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(mirrors)) as executor:
            futures: List[concurrent.futures.Future] = []
            for i, mirror in enumerate(mirrors):
                futures.append(executor.submit(self.probe, i, mirror))
                if stagger > 0 and i < len(mirrors) - 1:
                    time.sleep(stagger)
            for future, mirror in zip(futures, mirrors):
                try:
                    future.result()
                except Exception as e:
                    print(f"Mirror worker for {mirror} generated an unhandled exception: {e}", flush=True)
                    if SYNC_DEBUG:
                        traceback.print_exc()

        if self.best is None:
            raise RaceError(f"no mirror provided a valid {self.release_path}")
        print(f"Using mirror at {self.best.mirror}", flush=True)
        return self.best


def race_mirrors(mirrors: Sequence[str], release_path: str, resolver: Resolver,
                 keyring: Optional[Keyring] = None, insecure: bool = False,
                 stagger: float = RACE_STAGGER) -> ReleaseSnapshot:
    return MirrorRace(release_path, resolver, keyring, insecure).run(mirrors, stagger)
