"""Mirror one Debian repository directory from the freshest signed Release."""

__version__ = "1.0.0"

from .errors import SyncError
from .fetch import DownloadOutcome, fetch_with_checksum, mirror_trial_order
from .race import MirrorRace, RaceError, race_mirrors
from .release import FileEntry, ReleaseParseError, ReleaseSnapshot, parse_release
from .signature import Keyring, SignatureError, verify_detached_signature
from .transport import Resolver, TransportError
