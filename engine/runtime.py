import os
import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version

from config.settings import FFMPEG_BINARY, YTDLP_BINARY


def get_runtime_info():
    return {
        "app_version": os.environ.get("AUDIOPIPE_VERSION", "0.1.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "yt_dlp_available": shutil.which(YTDLP_BINARY) is not None,
        "ffmpeg_available": shutil.which(FFMPEG_BINARY) is not None,
    }
