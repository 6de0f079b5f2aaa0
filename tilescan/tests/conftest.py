"""
Shared fixtures: an in-process stand-in for requests.Session so no test ever
touches the network, and Pillow-generated PNG bodies.
"""

import os
import sys
import time
import logging
import threading
from io import BytesIO

import pytest
from PIL import Image
from requests.structures import CaseInsensitiveDict

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def make_png(size=(4, 4), color=(255, 0, 0, 255)):
    buf = BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeResponse(object):
    def __init__(self, status_code=200, content=b"", headers=None, reason="OK"):
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})
        self.reason = reason
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession(object):
    """
    handler(url) returns a FakeResponse, or an exception instance to raise.
    Tracks how many get() calls overlap.
    """

    def __init__(self, handler, delay=0.0):
        self.handler = handler
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def get(self, url, headers=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "headers": headers, "timeout": timeout})
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            result = self.handler(url)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def png_bytes():
    return make_png


@pytest.fixture
def ok_session():
    """Every URL answers 200 with a 4x4 red PNG."""
    body = make_png()
    return FakeSession(lambda url: FakeResponse(
        200, body, {"Last-Modified": "Wed, 01 May 2024 10:00:00 GMT"}
    ))


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    root.setLevel(level)
