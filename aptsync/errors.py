class SyncError(Exception):
    """A condition that ends the whole sync with a non-zero status."""
