"""Authentication manager for the bookstore API."""

import json
import os
from pathlib import Path
from typing import Optional
import logging

from .models import SessionData

logger = logging.getLogger(__name__)


class AuthManager:
    """Manages the bearer token and its persistence between runs."""

    def __init__(self, session_file: Optional[str] = None) -> None:
        """
        Initialize the authentication manager.

        Args:
            session_file: Path to store session data. Defaults to ~/.bookstore_session.json
        """
        if session_file is None:
            session_file = str(Path.home() / ".bookstore_session.json")
        self.session_file = session_file
        self.session: SessionData = self._load_session()

        self._load_token_from_env()

    def _load_session(self) -> SessionData:
        """Load session data from file if it exists."""
        if os.path.exists(self.session_file):
            try:
                with open(self.session_file, "r") as f:
                    data = json.load(f)
                    return SessionData(**data)
            except (json.JSONDecodeError, ValueError, TypeError):
                logger.warning(f"Ignoring unreadable session file {self.session_file}")
        return SessionData()

    def _save_session(self) -> None:
        """Save session data to file."""
        with open(self.session_file, "w") as f:
            json.dump(self.session.model_dump(), f, default=str)
        os.chmod(self.session_file, 0o600)

    def save_session(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> None:
        """
        Save authentication session.

        Args:
            access_token: Bearer token from a successful login
            refresh_token: Refresh token, if the store issued one
            user_email: User's email address
        """
        self.session = SessionData(
            access_token=access_token,
            refresh_token=refresh_token,
            user_email=user_email,
            is_authenticated=True,
        )
        self._save_session()
        logger.info(f"Session saved to {self.session_file}")

    def get_session(self) -> SessionData:
        """Get current session data."""
        return self.session

    def clear_session(self) -> None:
        """Clear the current session."""
        self.session = SessionData()
        if os.path.exists(self.session_file):
            os.remove(self.session_file)
            logger.info("Session cleared")

    def is_authenticated(self) -> bool:
        """Check if there's an active authenticated session."""
        return self.session.is_authenticated and bool(self.session.access_token)

    def get_token(self) -> Optional[str]:
        """Get the bearer token, if any."""
        if not self.is_authenticated():
            return None
        return self.session.access_token

    def _load_token_from_env(self) -> None:
        """Use BOOKSTORE_ACCESS_TOKEN as the session token when it is set."""
        token = os.environ.get("BOOKSTORE_ACCESS_TOKEN")
        if not token:
            logger.debug("No access token found in environment variables")
            return

        logger.info("✓ Loaded access token from environment")
        self.session = SessionData(
            access_token=token,
            user_email=self.session.user_email,
            is_authenticated=True,
        )
        self._save_session()
