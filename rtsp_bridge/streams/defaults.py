"""
Shared default values for the stream engines.

Keep this module lightweight - it's imported by the live worker thread.
"""

DEFAULT_FFMPEG_PATH = "ffmpeg"
DEFAULT_SNAPSHOT_INTERVAL_MS = 50
DEFAULT_SNAPSHOT_SIZE = (1280, 720)
DEFAULT_STOP_TIMEOUT = 2.0
DEFAULT_KILL_WAIT = 1.0

DEFAULT_OVERLAY_MODE = "video"
DEFAULT_ALT_MEDIA_WAIT = 5.0
DEFAULT_ALT_MEDIA_POLL = 0.05
DEFAULT_OVERLAY_LEAD_TIME = 5.0
DEFAULT_LIVE_SOURCE_URL = "rtsp://localhost:8554/{camera_id}_live"

DEFAULT_TICKET_URL = "https://app.ring.com/api/v1/clap/ticket/request/signalsocket"
DEFAULT_TICKET_TIMEOUT = 10.0

DEFAULT_SETTLE_DELAY = 2.0
DEFAULT_STOP_ATTEMPTS = 10
DEFAULT_STOP_RETRY_INTERVAL = 0.2

DEFAULT_FRAME_BUFFER_LIMIT = 1024 * 1024
JPEG_START_MARKER = b"\xff\xd8"
JPEG_END_MARKER = b"\xff\xd9"

RTSP_TRANSPORT = "tcp"
