"""Stand-ins for ffmpeg subprocesses and camera signaling sessions."""
