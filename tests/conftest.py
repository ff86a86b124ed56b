from __future__ import annotations

import base64
import gzip
import hashlib
import time
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import Dict, Optional, Sequence

import pytest

from aptsync.signature import KEY_FLAG_SIGN, Keyring, crc24
from aptsync.transport import TransportError

KEY_ID = 0x648ACFD622F3D138
OTHER_KEY_ID = 0x0E98404D386FA1D9

SECTIONS = {
    "MD5Sum": hashlib.md5,
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


def date_header(ts: datetime) -> str:
    return format_datetime(ts.astimezone(timezone.utc), usegmt=True).replace("GMT", "UTC")


def release_bytes(date: Optional[datetime], files: Dict[str, bytes],
                  sections: Sequence[str] = ("MD5Sum", "SHA256"),
                  headers: Optional[Dict[str, str]] = None) -> bytes:
    lines = ["Origin: Debian", "Label: Debian", "Suite: stable", "Codename: bookworm"]
    if date is not None:
        lines.append(f"Date: {date_header(date)}")
    for key, value in (headers or {}).items():
        lines.append(f"{key}: {value}")
    lines.append("Architectures: amd64")
    lines.append("Components: main")
    for section in sections:
        lines.append(f"{section}:")
        for path, data in files.items():
            lines.append(f" {SECTIONS[section](data).hexdigest()} {len(data):>16} {path}")
    return ("\n".join(lines) + "\n").encode()


def _subpacket(sp_type: int, data: bytes) -> bytes:
    return bytes([len(data) + 1, sp_type]) + data


def signature_packet(data: bytes, key_id: Optional[int] = KEY_ID, created: int = 1726307306,
                     hash_algo: int = 8, sig_type: int = 0x00, fingerprint: Optional[bytes] = None,
                     old_format: bool = False) -> bytes:
    """Builds a v4 signature packet whose digest fields match data."""
    hashed = _subpacket(2, created.to_bytes(4, 'big'))
    if fingerprint is not None:
        hashed += _subpacket(33, b"\x04" + fingerprint)
    unhashed = _subpacket(16, key_id.to_bytes(8, 'big')) if key_id is not None else b""
    head = bytes([4, sig_type, 1, hash_algo]) + len(hashed).to_bytes(2, 'big') + hashed
    if sig_type == 0x01:
        data = data.replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")
    name = {1: "md5", 2: "sha1", 8: "sha256", 10: "sha512"}[hash_algo]
    digest = hashlib.new(name, data + head + b"\x04\xff" + len(head).to_bytes(4, 'big')).digest()
    body = head + len(unhashed).to_bytes(2, 'big') + unhashed + digest[:2] + b"\x00\x08\xa5"
    if old_format:
        return bytes([0x80 | (2 << 2) | 0x01]) + len(body).to_bytes(2, 'big') + body
    return bytes([0xC2, len(body)]) + body


def armor(body: bytes, crc: Optional[int] = None) -> bytes:
    b64 = base64.b64encode(body).decode()
    lines = [b64[i:i + 64] for i in range(0, len(b64), 64)]
    checksum = base64.b64encode((crc24(body) if crc is None else crc).to_bytes(3, 'big')).decode()
    text = "-----BEGIN PGP SIGNATURE-----\nVersion: GnuPG v2\n\n"
    text += "\n".join(lines) + f"\n={checksum}\n-----END PGP SIGNATURE-----\n"
    return text.encode()


def sign(data: bytes, key_id: int = KEY_ID, **kwargs) -> bytes:
    return armor(signature_packet(data, key_id=key_id, **kwargs))


class FakeKey:
    def __init__(self, key_id: int, valid: bool = True):
        self.key_id = key_id
        self.valid = valid


class FakeKeyring(Keyring):
    def __init__(self, *keys: FakeKey):
        self.keys = list(keys)
        self.verified = []

    def find(self, key_id, usage=KEY_FLAG_SIGN):
        return [k for k in self.keys if k.key_id == key_id]

    def verify(self, key, signature, data):
        self.verified.append((key.key_id, signature.hash_name))
        return key.valid


class FakeResolver:
    """Serves bytes from a dict, optionally sleeping per locator prefix."""

    def __init__(self, resources: Dict[str, bytes], delays: Optional[Dict[str, float]] = None):
        self.resources = resources
        self.delays = delays or {}
        self.requests = []

    def fetch(self, locator: str) -> bytes:
        self.requests.append(locator)
        for prefix, delay in self.delays.items():
            if locator.startswith(prefix):
                time.sleep(delay)
        if locator not in self.resources:
            raise TransportError(f"{locator}: not found")
        return self.resources[locator]


def make_mirror(root: Path, files: Dict[str, bytes], date: Optional[datetime],
                key_id: Optional[int] = KEY_ID, headers: Optional[Dict[str, str]] = None,
                sections: Sequence[str] = ("MD5Sum", "SHA256"),
                listed: Optional[Dict[str, bytes]] = None, inrelease: bool = True) -> str:
    """
    Lays out root/dists/stable with a Release describing `listed` (defaults to
    files) and writes the actual `files` under it.
    """
    dist = root / "dists" / "stable"
    dist.mkdir(parents=True, exist_ok=True)
    release = release_bytes(date, listed if listed is not None else files, sections, headers)
    (dist / "Release").write_bytes(release)
    if key_id is not None:
        (dist / "Release.gpg").write_bytes(sign(release, key_id))
        if inrelease:
            (dist / "InRelease").write_bytes(b"-----BEGIN PGP SIGNED MESSAGE-----\n" + release)
    for path, data in files.items():
        target = dist / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    return str(root)


@pytest.fixture
def keyring():
    return FakeKeyring(FakeKey(KEY_ID))


@pytest.fixture
def packages():
    text = b"Package: hello\nVersion: 2.10-3\nArchitecture: amd64\nFilename: pool/main/h/hello/hello_2.10-3_amd64.deb\n"
    return text, gzip.compress(text, mtime=0)


T1 = datetime(2024, 9, 1, 9, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 9, 7, 9, 0, 0, tzinfo=timezone.utc)
T3 = datetime(2024, 9, 14, 9, 48, 26, tzinfo=timezone.utc)
