"""
Defines application-wide constants and paths.

This module centralizes configuration for paths, URLs, and subprocess behavior,
adapting to whether the application is running from source or as a frozen executable.
"""

import os
import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'ytqueue').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for all state to avoid permission issues.
USER_DATA_DIR: Path = Path(os.environ.get('YTQUEUE_HOME', Path.home() / '.ytqueue'))
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Download Housekeeping ---
# Platform junk that must never be moved into the downloads folder.
SYSTEM_FILES = frozenset({'.DS_Store', 'Thumbs.db', 'desktop.ini'})
# Leftovers of an interrupted yt-dlp run.
PARTIAL_SUFFIXES = frozenset({'.part', '.ytdl', '.tmp'})
# Files in the partials folder modified this recently are attributed to a cancelled job.
CANCEL_CLEANUP_CUTOFF_SECONDS = 5 * 60

# --- Update Checker ---
YT_DLP_RELEASES_API_URL = 'https://api.github.com/repos/yt-dlp/yt-dlp/releases/latest'
REQUEST_HEADERS = {
    'User-Agent': 'ytqueue (+https://github.com/yt-dlp/yt-dlp)',
    'Accept': 'application/vnd.github+json',
}
REQUEST_TIMEOUTS = (10, 30)  # (connect_timeout, read_timeout)
