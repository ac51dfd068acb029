"""Shared fakes for the troubleshooter tests.

Nothing here touches the real host: commands go through FakeRunner and
tool lookups through make_which.
"""

import io
from typing import Dict, List, Optional, Tuple

import pytest

import znn_troubleshoot as zt


class FakeRunner:
    """Command runner returning canned results keyed by command prefix.

    A leading "sudo" is ignored when matching, so tests behave the same
    whether or not they run as root. The longest matching prefix wins.
    """

    def __init__(self, responses: Optional[Dict[Tuple[str, ...], Tuple[int, str, str]]] = None,
                 default: Tuple[int, str, str] = (0, "", "")):
        self.responses = responses or {}
        self.default = default
        self.calls: List[List[str]] = []

    def __call__(self, cmd, timeout=None):
        self.calls.append(list(cmd))
        stripped = tuple(cmd[1:] if cmd and cmd[0] == "sudo" else cmd)
        best = None
        for prefix in self.responses:
            if stripped[:len(prefix)] == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        return self.responses[best] if best is not None else self.default

    def commands(self) -> List[List[str]]:
        """Recorded commands with any sudo prefix dropped."""
        return [c[1:] if c and c[0] == "sudo" else c for c in self.calls]


def make_which(*available: str):
    def which(name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in available else None
    return which


def no_input(message: str) -> str:
    raise AssertionError(f"unexpected prompt: {message}")


@pytest.fixture
def report(tmp_path):
    with zt.Report(str(tmp_path / zt.REPORT_NAME), echo=False) as rep:
        yield rep


@pytest.fixture
def fake_runner():
    return FakeRunner()


class FakeResponse:
    """Stand-in for a streamed requests.Response: raw body reads plus .text."""

    def __init__(self, text: str, encoding: Optional[str] = None):
        self.text = text
        self.encoding = encoding
        self.raw = io.BytesIO(text.encode("utf-8"))

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False
