"""A personal media-download queue manager built around yt-dlp."""
from ._version import __version__
