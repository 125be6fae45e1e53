"""Configuration management for spmirror.

Settings are read from environment variables first and then from
``~/.config/spmirror/config``, a dotenv file written by ``spmirror init``.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values, set_key

logger = logging.getLogger(__name__)

SITE_URL_KEY = "SPMIRROR_SITE_URL"
ACCESS_TOKEN_KEY = "SPMIRROR_ACCESS_TOKEN"


class Config:
    """Site URL and access token lookup."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding the config file.
                Defaults to ~/.config/spmirror
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "spmirror"
        self.config_dir = config_dir
        self.config_file = config_dir / "config"

    def _read_file(self) -> dict[str, Optional[str]]:
        """Read the config file as a dotenv file."""
        if not self.config_file.exists():
            return {}
        values = dotenv_values(self.config_file, interpolate=False, encoding="utf-8")
        return dict(values)

    def _get(self, key: str) -> Optional[str]:
        value = os.environ.get(key)
        if value:
            return value
        return self._read_file().get(key) or None

    @property
    def site_url(self) -> Optional[str]:
        """Absolute URL of the site to mirror."""
        return self._get(SITE_URL_KEY)

    @property
    def access_token(self) -> Optional[str]:
        """OAuth bearer token for the site."""
        return self._get(ACCESS_TOKEN_KEY)

    def save_credentials(self, site_url: str, access_token: str) -> Path:
        """Write site URL and token to the config file.

        Other keys already in the file are kept. The file is created with
        owner-only permissions.

        Returns:
            Path of the written config file
        """
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.touch(exist_ok=True)
        set_key(self.config_file, SITE_URL_KEY, site_url, encoding="utf-8")
        set_key(self.config_file, ACCESS_TOKEN_KEY, access_token, encoding="utf-8")
        try:
            os.chmod(self.config_file, 0o600)
        except OSError:
            # Not supported on every filesystem
            logger.debug("Could not restrict permissions of %s", self.config_file)

        return self.config_file


config = Config()
