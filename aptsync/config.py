import os

# Per-request deadline for metadata, signature and data fetches (seconds)
FETCH_TIMEOUT = float(os.getenv('FETCH_TIMEOUT', '5'))
# Delay between launching mirror workers in the release race (seconds)
RACE_STAGGER = float(os.getenv('RACE_STAGGER', '0.07'))
APTSYNC_USER_AGENT = os.getenv("APTSYNC_USER_AGENT", "APT-Mirror-Tool/1.0")
# Number of files downloaded at once
PARALLEL_DOWNLOADS = int(os.getenv('PARALLEL_DOWNLOADS', '1'))
REPO_SIZE_FILE = os.getenv('REPO_SIZE_FILE', '')
# Print verbose debugging output
SYNC_DEBUG = os.getenv('SYNC_DEBUG', '').lower() in ('true', '1', 'yes', 'y')
