"""Live broadcast gateway: presenter WebSocket -> ffmpeg -> Icecast, plus the recording conversion queue."""

__version__ = "0.1.0"
