"""
Shared constants for the application.
"""

# Video container extensions picked up by library scans
VIDEO_EXTENSIONS = [
    ".avi",
    ".m4v",
    ".mkv",
    ".mov",
    ".mp4",
    ".mpg",
    ".ts",
    ".webm",
    ".wmv",
]

# Sidecar subtitle extensions
SUBTITLE_EXTENSIONS = [".ass", ".srt", ".ssa", ".sub", ".vtt"]

# Subtitle codec (ffprobe codec_name) -> output file extension
SUBTITLE_CODEC_EXTENSIONS = {
    "ass": "ass",
    "mov_text": "srt",
    "ssa": "ssa",
    "subrip": "srt",
    "webvtt": "vtt",
}

# Image based subtitle codecs that cannot be converted to text formats
IMAGE_SUBTITLE_CODECS = {"dvd_subtitle", "hdmv_pgs_subtitle", "dvb_subtitle"}

# Whisper model names
WHISPER_MODELS = ["tiny", "base", "small", "medium", "large", "turbo"]

# Translation providers understood by the translation client
TRANSLATION_PROVIDERS = ["openai", "openai-compatible"]

# Backup file names
BACKUP_FILE_PREFIX = "subkeeper_backup_"

# Temp file names containing one of these markers are eligible for cleanup
TEMP_FILE_MARKERS = ["subkeeper", "subtitle", "ffmpeg", "ffsubsync", "whisper"]

# Lines kept from tool stderr in error messages and results
TOOL_OUTPUT_TAIL_LINES = 20
