"""Checks whether a newer yt-dlp release is available on GitHub."""
import asyncio
import logging
import json
from typing import Dict, Optional

import requests
from packaging.version import parse, InvalidVersion

from .constants import YT_DLP_RELEASES_API_URL, REQUEST_HEADERS, REQUEST_TIMEOUTS
from .config import Settings
from .notifications import NotificationService, UPDATE_AVAILABLE


class AppUpdater:
    """Compares the installed yt-dlp with its latest GitHub release."""

    def __init__(self, config: Settings, notifications: Optional[NotificationService] = None):
        """
        Initializes the AppUpdater.

        Args:
            config: The application's configuration settings object.
            notifications: Receives an entry when a newer version is found.
        """
        self.config = config
        self.notifications = notifications
        self.logger = logging.getLogger(__name__)

    async def check_for_updates(self, installed_version: Optional[str]) -> Optional[Dict[str, str]]:
        """
        Runs the check in a worker thread and records a notification if an update exists.

        Returns:
            The newer version and its release URL, or None.
        """
        if not installed_version:
            self.logger.debug("No installed yt-dlp version known, skipping update check.")
            return None

        result = await asyncio.to_thread(self._perform_check, installed_version)
        if result and self.notifications is not None:
            await self.notifications.add_notification(
                UPDATE_AVAILABLE, f"yt-dlp {result['version']} is available", url=result['url']
            )
        return result

    def _perform_check(self, installed_version: str) -> Optional[Dict[str, str]]:
        """
        Fetches the latest release info from GitHub and compares versions.

        Handles network errors, parsing errors, and unexpected API responses gracefully.
        """
        self.logger.info("Checking for yt-dlp updates...")
        latest_version_str = ""  # Initialize to prevent potential unbound error
        try:
            response = requests.get(YT_DLP_RELEASES_API_URL, headers=REQUEST_HEADERS, timeout=REQUEST_TIMEOUTS)
            response.raise_for_status()

            data = response.json()
            if not isinstance(data, dict):
                self.logger.warning(f"Unexpected API response type: {type(data)}")
                return None

            latest_version_str = data.get('tag_name')
            release_url = data.get('html_url')

            if not latest_version_str or not release_url:
                self.logger.warning("Could not find version tag or URL in API response.")
                return None

            # Strip a leading 'v' if it exists, for cleaner parsing
            if latest_version_str.startswith('v'):
                latest_version_str = latest_version_str[1:]

            if latest_version_str == self.config.skipped_update_version:
                self.logger.info(f"Update for version {latest_version_str} has been skipped by the user.")
                return None

            current_version = parse(installed_version)
            latest_version = parse(latest_version_str)

            self.logger.info(f"Installed yt-dlp: {current_version}, latest release: {latest_version}")

            if latest_version > current_version:
                self.logger.info(f"New yt-dlp version available: {latest_version}")
                return {'version': latest_version_str, 'url': release_url}

        except requests.exceptions.RequestException as e:
            status_code = f" (Status: {e.response.status_code})" if getattr(e, 'response', None) is not None else ""
            self.logger.warning(f"Failed to check for updates (network error): {e}{status_code}")
        except (InvalidVersion, KeyError, TypeError, json.JSONDecodeError) as e:
            self.logger.warning(f"Could not parse API response from GitHub: {e}")
            if latest_version_str:
                self.logger.warning(f"Version string was: '{latest_version_str}'")
        return None
