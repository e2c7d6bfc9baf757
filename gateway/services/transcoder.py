"""Offline ffmpeg transcode of stored recordings to web-playable MP3."""
import asyncio
import logging
from pathlib import Path
from typing import Protocol

from ..errors import TranscodeError

logger = logging.getLogger(__name__)

# Voice-memo friendly: mono, 22.05 kHz, 64 kbps.
TARGET_SAMPLE_RATE = 22050
TARGET_CHANNELS = 1
TARGET_BITRATE = "64k"


class Transcoder(Protocol):
    async def transcode(self, src: Path, dest: Path, source_format: str) -> None: ...


def build_transcode_args(binary: str, src: Path, dest: Path) -> list[str]:
    return [
        binary,
        "-hide_banner",
        "-loglevel", "error",
        "-y",
        "-i", str(src),
        "-vn",
        "-acodec", "libmp3lame",
        "-ab", TARGET_BITRATE,
        "-ac", str(TARGET_CHANNELS),
        "-ar", str(TARGET_SAMPLE_RATE),
        "-f", "mp3",
        str(dest),
    ]


class FfmpegTranscoder:
    def __init__(self, ffmpeg_binary: str = "ffmpeg"):
        self._binary = ffmpeg_binary

    async def transcode(self, src: Path, dest: Path, source_format: str) -> None:
        args = build_transcode_args(self._binary, src, dest)
        logger.info("Transcoding %s (%s) -> %s", src.name, source_format, dest.name)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Could not run {self._binary}: {e}") from e
        _, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-3:]
            raise TranscodeError(f"ffmpeg exited with code {process.returncode}: {' | '.join(detail)}")
        if not dest.exists() or dest.stat().st_size == 0:
            raise TranscodeError("ffmpeg produced no output")
