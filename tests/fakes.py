"""In-memory stand-ins for MongoDB, S3, ffmpeg and the presenter socket."""
import asyncio
import copy
import itertools
import threading
import time
from pathlib import Path

import jwt

from gateway.errors import StorageError, TranscodeError

TEST_SECRET = "test-secret"


def make_token(
    user_id: str = "u-a",
    email: str = "a@example.com",
    role: str = "presenter",
    name: str | None = None,
    *,
    secret: str = TEST_SECRET,
    issuer: str = "broadcast-portal",
    audience: str = "broadcast-gateway",
    expires_in: int = 3600,
) -> str:
    now = int(time.time())
    claims = {
        "userId": user_id,
        "email": email,
        "role": role,
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
    }
    if name:
        claims["name"] = name
    return jwt.encode(claims, secret, algorithm="HS256")


def eventually(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll from the test thread while the app runs on the TestClient loop."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(interval)


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class InMemoryLiveState:
    def __init__(self, doc: dict | None = None):
        self.doc = copy.deepcopy(doc)
        self.saves = 0
        self._lock = threading.Lock()

    def load(self) -> dict | None:
        with self._lock:
            return copy.deepcopy(self.doc)

    def save(self, doc: dict) -> None:
        with self._lock:
            self.doc = copy.deepcopy(doc)
            self.saves += 1


class InMemoryRecordings:
    def __init__(self, records: dict[str, dict] | None = None):
        self.records = copy.deepcopy(records or {})
        self.history: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def get(self, recording_id: str) -> dict | None:
        with self._lock:
            doc = self.records.get(recording_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update(self, recording_id: str, fields: dict) -> bool:
        with self._lock:
            if recording_id not in self.records:
                return False
            self.records[recording_id].update(copy.deepcopy(fields))
            self.history.append((recording_id, dict(fields)))
            return True


class FakeObjectStore:
    def __init__(self, fail_downloads: bool = False):
        self.fail_downloads = fail_downloads
        self.downloads: list[tuple[str, Path]] = []
        self.uploads: dict[str, bytes] = {}

    async def download(self, key: str, dest: Path) -> None:
        self.downloads.append((key, dest))
        if self.fail_downloads:
            raise StorageError(f"Download of {key} failed: NoSuchKey")
        dest.write_bytes(b"#!AMR\n" + b"\x00" * 64)

    async def upload(self, src: Path, key: str, content_type: str = "audio/mpeg") -> None:
        self.uploads[key] = src.read_bytes()

    def public_url(self, key: str) -> str:
        return f"https://cdn.example.com/{key}"


class ScriptedTranscoder:
    """Writes a fake MP3, or fails; tracks how many run at once."""

    def __init__(self, fail: bool = False, hold: float = 0.0):
        self.fail = fail
        self.hold = hold
        self.calls = 0
        self.in_flight = 0
        self.peak = 0
        self.seen_inputs: list[Path] = []

    async def transcode(self, src: Path, dest: Path, source_format: str) -> None:
        self.calls += 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.seen_inputs.append(src)
        try:
            if self.hold:
                await asyncio.sleep(self.hold)
            if self.fail:
                raise TranscodeError("ffmpeg exited with code 1: Invalid data found when processing input")
            dest.write_bytes(b"ID3" + b"\xff" * 128)
        finally:
            self.in_flight -= 1


class FakeStdin:
    def __init__(self):
        self.written = bytearray()
        self.closed = False
        self.buffered = 0
        self.error: Exception | None = None

    @property
    def transport(self):
        return self

    def is_closing(self) -> bool:
        return self.closed

    def get_write_buffer_size(self) -> int:
        return self.buffered

    def write(self, data: bytes) -> None:
        if self.error is not None:
            raise self.error
        self.written.extend(data)

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    _pids = itertools.count(4000)

    def __init__(self, args, stderr_lines=()):
        self.args = list(args)
        self.pid = next(self._pids)
        self.stdin = FakeStdin()
        self.stderr = asyncio.StreamReader()
        for line in stderr_lines:
            self.stderr.feed_data(line)
        self.returncode: int | None = None
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stderr.feed_eof()
            self._exited.set()

    def terminate(self) -> None:
        self.signals.append("TERM")
        self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)


class FakeSpawner:
    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.fail_with: Exception | None = None
        self.stderr_lines: list[bytes] = []

    async def __call__(self, *args, **kwargs) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(args, self.stderr_lines)
        self.processes.append(process)
        return process

    @property
    def current(self) -> FakeProcess:
        return self.processes[-1]


class FakeConnection:
    """Records what the gateway sends to a presenter."""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed: tuple[int, str | None] | None = None

    async def send_json(self, data) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def last(self, kind: str) -> dict:
        for message in reversed(self.sent):
            if message["type"] == kind:
                return message
        raise AssertionError(f"no {kind} message in {self.types()}")
