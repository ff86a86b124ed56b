"""
Detached OpenPGP signature checking for Release files.

The armored Release.gpg is decoded and its signature packets parsed here,
which yields the issuer key id, the signing time and the digest of the signed
data. Deciding whether a key is trusted and checking the signature math is
left to a Keyring; GnupgKeyring is the gpg backed one used by the command
line tool.
"""
import base64
import binascii
import hashlib
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Sequence

import gnupg

from .config import SYNC_DEBUG
from .errors import SyncError

# Key usage flag for signing (RFC 4880 5.2.3.21)
KEY_FLAG_SIGN = 0x02

# OpenPGP hash algorithm ids to hashlib names
HASH_ALGORITHMS = {
    1: "md5",
    2: "sha1",
    3: "ripemd160",
    8: "sha256",
    9: "sha384",
    10: "sha512",
    11: "sha224",
}

SIGNATURE_PACKET_TAG = 2
SIG_TYPE_TEXT = 0x01

SUBPACKET_CREATION_TIME = 2
SUBPACKET_ISSUER = 16
SUBPACKET_ISSUER_FINGERPRINT = 33

ARMOR_BEGIN = "-----BEGIN PGP SIGNATURE-----"
ARMOR_END = "-----END PGP SIGNATURE-----"

CRC24_INIT = 0xB704CE
CRC24_POLY = 0x1864CFB


class SignatureError(Exception):
    reason = "signature"


class DecodeError(SignatureError):
    reason = "decode"


class NoIssuer(SignatureError):
    reason = "no-issuer"


class NoMatchingKey(SignatureError):
    reason = "no-key"


class BadSignature(SignatureError):
    reason = "bad-signature"


class KeyringError(SyncError):
    pass


def crc24(data: bytes) -> int:
    crc = CRC24_INIT
    for byte in data:
        crc ^= byte << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= CRC24_POLY
    return crc & 0xFFFFFF


def dearmor(armored: bytes) -> bytes:
    """Returns the binary body of an ASCII armored PGP SIGNATURE block."""
    lines = [l.strip() for l in armored.decode('ascii', errors='replace').splitlines()]
    try:
        start = lines.index(ARMOR_BEGIN)
        end = lines.index(ARMOR_END, start)
    except ValueError:
        raise DecodeError("no armored signature block found")

    block = lines[start + 1:end]
    # armor headers (e.g. 'Version: GnuPG v1') end at the first blank line
    if "" in block:
        if all(":" in l for l in block[:block.index("")]):
            block = block[block.index("") + 1:]
    block = [l for l in block if l]

    checksum = None
    if block and block[-1].startswith("=") and len(block[-1]) == 5:
        checksum = block.pop()[1:]
    try:
        body = base64.b64decode("".join(block), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"invalid base64 in signature: {e}")
    if not body:
        raise DecodeError("empty signature block")

    if checksum is not None:
        try:
            expected = int.from_bytes(base64.b64decode(checksum, validate=True), 'big')
        except (binascii.Error, ValueError):
            raise DecodeError("invalid armor checksum")
        if crc24(body) != expected:
            raise DecodeError("armor checksum mismatch")
    return body


def iter_packets(data: bytes):
    """Yields (tag, body) for each OpenPGP packet in data."""
    pos = 0
    while pos < len(data):
        ctb = data[pos]
        pos += 1
        if not ctb & 0x80:
            raise DecodeError(f"invalid packet header 0x{ctb:02x}")
        if ctb & 0x40:
            tag = ctb & 0x3F
            if pos >= len(data):
                raise DecodeError("truncated packet length")
            first = data[pos]
            if first < 192:
                length, pos = first, pos + 1
            elif first < 224:
                if pos + 1 >= len(data):
                    raise DecodeError("truncated packet length")
                length = ((first - 192) << 8) + data[pos + 1] + 192
                pos += 2
            elif first == 255:
                length = int.from_bytes(data[pos + 1:pos + 5], 'big')
                pos += 5
            else:
                raise DecodeError("partial body lengths are not supported for signatures")
        else:
            tag = (ctb >> 2) & 0x0F
            length_type = ctb & 0x03
            if length_type == 3:
                length = len(data) - pos
            else:
                n = 1 << length_type
                length = int.from_bytes(data[pos:pos + n], 'big')
                pos += n
        if pos + length > len(data):
            raise DecodeError("truncated packet")
        yield tag, data[pos:pos + length]
        pos += length


def _iter_subpackets(area: bytes):
    pos = 0
    while pos < len(area):
        first = area[pos]
        if first < 192:
            length, pos = first, pos + 1
        elif first < 255:
            if pos + 1 >= len(area):
                raise DecodeError("truncated subpacket length")
            length = ((first - 192) << 8) + area[pos + 1] + 192
            pos += 2
        else:
            length = int.from_bytes(area[pos + 1:pos + 5], 'big')
            pos += 5
        if length == 0 or pos + length > len(area):
            raise DecodeError("truncated signature subpacket")
        # high bit marks the subpacket as critical
        yield area[pos] & 0x7F, area[pos + 1:pos + length]
        pos += length


class Signature:
    """A parsed version 3 or 4 signature packet and the digest it covers."""

    def __init__(self, packet: bytes, version: int, sig_type: int, pubkey_algo: int,
                 hash_algo: int, key_id: Optional[int], created: Optional[datetime],
                 left16: bytes, hashed_trailer: bytes):
        self.packet = packet
        self.version = version
        self.sig_type = sig_type
        self.pubkey_algo = pubkey_algo
        self.hash_algo = hash_algo
        self.key_id = key_id
        self.created = created
        self.left16 = left16
        self.hashed_trailer = hashed_trailer
        self.digest = b""

    @property
    def hash_name(self) -> str:
        return HASH_ALGORITHMS[self.hash_algo]

    @property
    def key_id_hex(self) -> str:
        return f"{self.key_id:016X}" if self.key_id is not None else "unknown"

    def compute_digest(self, data: bytes) -> bytes:
        if self.sig_type == SIG_TYPE_TEXT:
            data = data.replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")
        try:
            h = hashlib.new(self.hash_name)
        except ValueError:
            raise DecodeError(f"hash algorithm {self.hash_name} is not available")
        h.update(data)
        h.update(self.hashed_trailer)
        self.digest = h.digest()
        return self.digest


def parse_signature_packet(body: bytes) -> Signature:
    if not body:
        raise DecodeError("empty signature packet")
    version = body[0]
    if version == 3:
        if len(body) < 19 or body[1] != 5:
            raise DecodeError("malformed v3 signature packet")
        sig_type = body[2]
        created = datetime.fromtimestamp(int.from_bytes(body[3:7], 'big'), tz=timezone.utc)
        key_id = int.from_bytes(body[7:15], 'big') or None
        pubkey_algo, hash_algo = body[15], body[16]
        left16 = body[17:19]
        trailer = body[2:7]
    elif version == 4:
        if len(body) < 6:
            raise DecodeError("malformed v4 signature packet")
        sig_type, pubkey_algo, hash_algo = body[1], body[2], body[3]
        hashed_len = int.from_bytes(body[4:6], 'big')
        hashed_end = 6 + hashed_len
        if hashed_end + 2 > len(body):
            raise DecodeError("truncated hashed subpackets")
        unhashed_len = int.from_bytes(body[hashed_end:hashed_end + 2], 'big')
        unhashed_end = hashed_end + 2 + unhashed_len
        if unhashed_end + 2 > len(body):
            raise DecodeError("truncated unhashed subpackets")
        left16 = body[unhashed_end:unhashed_end + 2]
        trailer = body[:hashed_end] + b"\x04\xff" + hashed_end.to_bytes(4, 'big')

        created = None
        key_id = None
        subpackets = list(_iter_subpackets(body[6:hashed_end]))
        subpackets += list(_iter_subpackets(body[hashed_end + 2:unhashed_end]))
        for sp_type, sp_data in subpackets:
            if sp_type == SUBPACKET_CREATION_TIME and len(sp_data) == 4 and created is None:
                created = datetime.fromtimestamp(int.from_bytes(sp_data, 'big'), tz=timezone.utc)
            elif sp_type == SUBPACKET_ISSUER and len(sp_data) == 8:
                key_id = int.from_bytes(sp_data, 'big') or key_id
            elif sp_type == SUBPACKET_ISSUER_FINGERPRINT and key_id is None:
                fp_version, fingerprint = sp_data[:1], sp_data[1:]
                if fp_version == b"\x04" and len(fingerprint) == 20:
                    key_id = int.from_bytes(fingerprint[-8:], 'big')
                elif len(fingerprint) == 32:
                    key_id = int.from_bytes(fingerprint[:8], 'big')
    else:
        raise DecodeError(f"unsupported signature version {version}")

    if hash_algo not in HASH_ALGORITHMS:
        raise DecodeError(f"unsupported hash algorithm {hash_algo}")
    return Signature(body, version, sig_type, pubkey_algo, hash_algo,
                     key_id, created, left16, trailer)


def read_signatures(armored: bytes) -> List[Signature]:
    signatures = [parse_signature_packet(body)
                  for tag, body in iter_packets(dearmor(armored))
                  if tag == SIGNATURE_PACKET_TAG]
    if not signatures:
        raise DecodeError("no signature packet found")
    return signatures


class SignatureStatus:
    def __init__(self, key_id: int, created: Optional[datetime], hash_name: str):
        self.key_id = key_id
        self.created = created
        self.hash_name = hash_name

    def __repr__(self):
        return f"SignatureStatus(key_id={self.key_id:016X}, created={self.created}, hash={self.hash_name})"


class Keyring:
    """
    Trusted signer keys. find() returns the keys with the given 64-bit key id
    that carry the usage flag; verify() checks one signature with one key.
    """

    def find(self, key_id: int, usage: int = KEY_FLAG_SIGN) -> Sequence[Any]:
        raise NotImplementedError

    def verify(self, key: Any, signature: Signature, data: bytes) -> bool:
        raise NotImplementedError


def _check_signature(signature: Signature, data: bytes, keyring: Keyring) -> SignatureStatus:
    if signature.key_id is None:
        raise NoIssuer("signature doesn't have an issuer")

    print(f"Verifying signature by 0x{signature.key_id_hex} made at {signature.created}...", flush=True)
    digest = signature.compute_digest(data)
    if digest[:2] != signature.left16:
        raise BadSignature(f"digest does not match signature by 0x{signature.key_id_hex}")

    keys = list(keyring.find(signature.key_id, KEY_FLAG_SIGN))
    if not keys:
        raise NoMatchingKey(f"no matching public key found for 0x{signature.key_id_hex}")
    if len(keys) > 1:
        print(f"Warning: More than one public key found matching 0x{signature.key_id_hex}", flush=True)

    for key in keys:
        if keyring.verify(key, signature, data):
            return SignatureStatus(signature.key_id, signature.created, signature.hash_name)
    raise BadSignature(f"signature by 0x{signature.key_id_hex} did not verify")


def verify_detached_signature(armored: bytes, data: bytes, keyring: Keyring) -> SignatureStatus:
    """
    Checks an armored detached signature over data against the keyring.
    Raises a SignatureError subclass naming the reason on failure.
    """
    errors = []
    for signature in read_signatures(armored):
        try:
            return _check_signature(signature, data, keyring)
        except SignatureError as e:
            if SYNC_DEBUG:
                print(f"  signature rejected ({e.reason}): {e}", flush=True)
            errors.append(e)
    raise errors[0]


class GnupgKeyring(Keyring):
    """Keyring backed by a throwaway gpg home directory."""

    def __init__(self, gnupghome: Optional[str] = None):
        self._tmpdir = None
        if gnupghome is None:
            gnupghome = self._tmpdir = tempfile.mkdtemp(prefix="aptsync-gpg-")
        self.gpg = gnupg.GPG(gnupghome=gnupghome)

    def import_file(self, path: Path) -> int:
        result = self.gpg.import_keys(path.read_bytes())
        return result.count or 0

    def find(self, key_id: int, usage: int = KEY_FLAG_SIGN) -> Sequence[Any]:
        wanted = f"{key_id:016X}"
        flag = "s" if usage & KEY_FLAG_SIGN else ""
        found = []
        for key in self.gpg.list_keys(keys=f"0x{wanted}"):
            if key.get("keyid", "").upper() == wanted and flag in key.get("cap", ""):
                found.append(key)
            for sub in key.get("subkeys", []):
                if len(sub) > 1 and sub[0].upper() == wanted and flag in sub[1]:
                    found.append(key)
        return found

    def verify(self, key: Any, signature: Signature, data: bytes) -> bool:
        fd, sig_path = tempfile.mkstemp(suffix=".sig")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(bytes([0xC0 | SIGNATURE_PACKET_TAG, 0xFF]))
                f.write(len(signature.packet).to_bytes(4, 'big'))
                f.write(signature.packet)
            verified = self.gpg.verify_data(sig_path, data)
        finally:
            os.unlink(sig_path)
        return bool(verified.valid)

    def close(self):
        if self._tmpdir:
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            self._tmpdir = None


def load_keyring(path: Path) -> GnupgKeyring:
    """Loads a keyring file, or every *.gpg file under a directory."""
    if path.is_dir():
        files = sorted(p for p in path.rglob("*.gpg") if p.is_file())
    elif path.is_file():
        files = [path]
    else:
        raise KeyringError(f"keyring {path} does not exist")

    try:
        keyring = GnupgKeyring()
    except (OSError, ValueError) as e:
        raise KeyringError(f"cannot start gpg: {e}") from e
    loaded = 0
    for file in files:
        if SYNC_DEBUG:
            print(f"Loading keys from {file}", flush=True)
        try:
            loaded += keyring.import_file(file)
        except OSError as e:
            keyring.close()
            raise KeyringError(f"Error loading keyring file {file}: {e}") from e
    if loaded == 0:
        keyring.close()
        raise KeyringError("no keys loaded")
    print(f"Loaded {loaded} keys from {path}", flush=True)
    return keyring
