import os
import time
from typing import Optional

import requests

from . import config


class TransportError(Exception):
    """A resource could not be read from a mirror."""


class Resolver:
    """
    Reads a resource given its locator. Locators starting with http:// or
    https:// are fetched with requests, anything else is a local path.
    """

    def __init__(self, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.timeout = config.FETCH_TIMEOUT if timeout is None else timeout
        if session is None:
            session = requests.Session()
            session.headers['User-Agent'] = config.APTSYNC_USER_AGENT
        self.session = session

    def fetch(self, locator: str) -> bytes:
        if locator.startswith(('http://', 'https://')):
            return self._fetch_http(locator)
        if locator.startswith('file://'):
            locator = locator[len('file://'):]
        return self._fetch_local(locator)

    def _fetch_local(self, path: str) -> bytes:
        if not os.path.isfile(path):
            raise TransportError(f"{path}: no such file")
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise TransportError(f"{path}: {e}") from e

    def _fetch_http(self, url: str) -> bytes:
        start = time.time()
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as r:
                r.raise_for_status()
                content = bytearray()
                for chunk in r.iter_content(chunk_size=1024**2):
                    # timeout only bounds each read, bound the whole transfer too
                    if time.time() - start > self.timeout:
                        raise TransportError(f"{url}: download timeout")
                    if not chunk: continue
                    content += chunk
                return bytes(content)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{url}: {e}") from e
