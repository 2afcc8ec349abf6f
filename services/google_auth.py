# taskflow/services/google_auth.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from core.settings import GOOGLE_SYNC
from models.integration import UserIntegration
from services.integrations import IntegrationStore
from utils.datetime_utils import ensure_utc


logger = logging.getLogger("taskflow.google_auth")

SCOPES = list(GOOGLE_SYNC.scopes)


class GoogleAuth:
    """Interactive OAuth consent that stores the granted tokens as an integration."""

    def __init__(
        self,
        integrations: IntegrationStore,
        secrets_path: str | Path = GOOGLE_SYNC.client_secret_path,
        *,
        client_id: str = GOOGLE_SYNC.client_id,
        client_secret: str = GOOGLE_SYNC.client_secret,
        flow_factory: Callable[[Dict[str, Any], list], Any] = InstalledAppFlow.from_client_config,
    ):
        self.integrations = integrations
        self.secrets_path = Path(secrets_path)
        self._client_id = client_id
        self._client_secret = client_secret
        self._flow_factory = flow_factory

    def client_config(self) -> Dict[str, Any]:
        """OAuth client config from env variables or the downloaded ``client_secret.json``."""

        if self._client_id and self._client_secret:
            return {
                "installed": {
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                    "token_uri": GOOGLE_SYNC.token_uri,
                    "redirect_uris": ["http://localhost"],
                }
            }
        if not self.secrets_path.exists():
            raise FileNotFoundError(
                f"{self.secrets_path} not found. Create a Desktop OAuth client in Google Cloud "
                "and download its JSON, or set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )
        try:
            config = json.loads(self.secrets_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValueError(f"Cannot read OAuth client file {self.secrets_path}: {exc}") from exc
        if "installed" not in config and "web" not in config:
            raise ValueError(f"{self.secrets_path} is not an OAuth client file")
        return config

    def client_credentials(self) -> Tuple[str, str]:
        config = self.client_config()
        section = config.get("installed") or config.get("web") or {}
        return section.get("client_id", ""), section.get("client_secret", "")

    def connect(self, user_id: str) -> UserIntegration:
        flow = self._flow_factory(self.client_config(), SCOPES)
        logger.info("Running OAuth consent flow (local server) for %s", user_id)
        creds: Credentials = flow.run_local_server(
            port=0,
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
        )
        if not creds or not creds.token:
            raise RuntimeError("Google did not return credentials")
        if not self._has_required_scopes(creds.scopes):
            raise RuntimeError("Authorization is missing required Google Calendar scopes")

        integration = self.integrations.save_tokens(
            user_id,
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=ensure_utc(creds.expiry) if creds.expiry else None,
        )
        self._log_active_scopes(creds.scopes)
        return integration

    def disconnect(self, user_id: str) -> None:
        self.integrations.disconnect(user_id)
        logger.info("Disconnected Google Calendar for %s", user_id)

    # ----- helpers -----
    @staticmethod
    def _has_required_scopes(scopes: Optional[Iterable[str]]) -> bool:
        # a flow that returns no scope list was granted what it asked for
        if scopes is None:
            return True
        current = set(scopes)
        return all(scope in current for scope in SCOPES)

    def _log_active_scopes(self, scopes: Iterable[str] | None) -> None:
        scopes_list = sorted(set(scopes or []))
        logger.info("Active scopes: %s", ", ".join(scopes_list) if scopes_list else "-")


__all__ = ["GoogleAuth", "SCOPES"]
