import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import keyring
from keyring.errors import KeyringError

from irukadark.config import AppConfig
from irukadark.utils import PathManager, mask_secret

SETTINGS_FILE_NAME: str = "irukadark.prefs.json"


class PreferencesManager:
    """
    Persists user preferences (model choices, search toggle, optional API keys)
    in a JSON file inside the user data directory.
    """

    def __init__(self, settings_file: Optional[Path] = None) -> None:
        self.settings_file: Path = settings_file or PathManager.get_user_data_path(
            SETTINGS_FILE_NAME
        )
        self._lock = threading.Lock()
        self._settings: Dict[str, Any] = {}
        self._loaded = False

    def _get_default_settings(self) -> Dict[str, Any]:
        """Returns the default preferences dictionary."""
        return {
            "version": AppConfig.VERSION,
            "GEMINI_MODEL": AppConfig.DEFAULT_AI_MODEL,
            "WEB_SEARCH_MODEL": AppConfig.DEFAULT_WEB_SEARCH_MODEL,
            "ENABLE_GOOGLE_SEARCH": "0",
        }

    def load(self) -> Dict[str, Any]:
        """Loads preferences from disk, falling back to defaults on any error."""
        with self._lock:
            try:
                if self.settings_file.exists():
                    with open(self.settings_file, "r", encoding="utf-8") as file_handle:
                        data = json.load(file_handle)
                    self._settings = data if isinstance(data, dict) else {}
                else:
                    self._settings = self._get_default_settings()
                    self._save_nolock()
            except (OSError, json.JSONDecodeError) as error:
                logging.error(f"Error loading preferences: {error}")
                self._settings = self._get_default_settings()
            self._loaded = True
            return dict(self._settings)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get(self, key: str, default: Any = None) -> Any:
        self._ensure_loaded()
        with self._lock:
            return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Updates one preference and writes the file."""
        self._ensure_loaded()
        with self._lock:
            if value is None or value == "":
                self._settings.pop(key, None)
            else:
                self._settings[key] = value
            self._save_nolock()

    def _save_nolock(self) -> None:
        try:
            self.settings_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.settings_file, "w", encoding="utf-8") as file_handle:
                json.dump(self._settings, file_handle, indent=2)
        except OSError as error:
            logging.error(f"Error saving preferences: {error}")

    # --- Typed accessors ---

    def get_model(self) -> str:
        return str(
            self.get("GEMINI_MODEL")
            or os.getenv("GEMINI_MODEL")
            or AppConfig.DEFAULT_AI_MODEL
        )

    def get_web_search_model(self) -> str:
        return str(
            self.get("WEB_SEARCH_MODEL")
            or os.getenv("WEB_SEARCH_MODEL")
            or AppConfig.DEFAULT_WEB_SEARCH_MODEL
        )

    def is_web_search_enabled(self) -> bool:
        raw = str(
            self.get("ENABLE_GOOGLE_SEARCH") or os.getenv("ENABLE_GOOGLE_SEARCH") or "0"
        )
        return raw.strip().lower() not in {"0", "false", "off", ""}


class CredentialManager:
    """
    Resolves API keys from the settings file, the native OS vault and the
    process environment, in that order.
    """

    SERVICE_NAME: str = AppConfig.KEYRING_SERVICE_NAME

    def __init__(
        self,
        preferences: PreferencesManager,
        slots: Optional[List[str]] = None,
    ) -> None:
        self.preferences = preferences
        self.slots: List[str] = list(slots or AppConfig.CREDENTIAL_SLOTS)

    def _read_vault(self, slot: str) -> Optional[str]:
        try:
            return keyring.get_password(self.SERVICE_NAME, slot)
        except KeyringError as error:
            logging.error(f"Error loading Keyring ({slot}): {error}")
            return None

    def resolve(self) -> List[str]:
        """
        Returns the ordered, de-duplicated list of non-empty credentials.
        The first entry is the preferred one.
        """
        resolved: List[str] = []
        seen = set()

        def _collect(value: Any) -> None:
            candidate = str(value).strip() if value else ""
            if candidate and candidate not in seen:
                seen.add(candidate)
                resolved.append(candidate)

        for slot in self.slots:
            _collect(self.preferences.get(slot))
        for slot in self.slots:
            _collect(self._read_vault(slot))
        for slot in self.slots:
            _collect(os.getenv(slot))

        logging.debug(
            f"Resolved {len(resolved)} credential(s): "
            f"{', '.join(mask_secret(key) for key in resolved) or 'none'}"
        )
        return resolved

    def save_credentials(self, keys_dict: Dict[str, str]) -> bool:
        """
        Saves API keys to the OS vault. Blank values delete the stored key.

        Args:
            keys_dict: Mapping of slot name (e.g. 'GEMINI_API_KEY') to key.

        Returns:
            bool: True if saving was successful, False otherwise.
        """
        try:
            for slot, value in keys_dict.items():
                stripped = value.strip() if value else ""
                if stripped:
                    keyring.set_password(self.SERVICE_NAME, slot, stripped)
                elif self._read_vault(slot):
                    keyring.delete_password(self.SERVICE_NAME, slot)

            logging.info("API keys saved to OS vault.")
            return True
        except KeyringError as error:
            logging.error(f"Error saving Keyring: {error}")
            return False

    def get_all_keys_status(self) -> Dict[str, bool]:
        """
        Reports which slots hold a key, without exposing the keys.
        """
        return {
            slot: bool(
                self.preferences.get(slot) or self._read_vault(slot) or os.getenv(slot)
            )
            for slot in self.slots
        }
