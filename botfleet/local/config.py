import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import botfleet.settings as default_settings
from botfleet.local.supervisor.worker import WorkerSpec

log = logging.getLogger(__name__)


class MergedSettings:
    """
    A class that merges default settings with the operator's settings.json.

    It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from `.env` (handled by `python-dotenv` in settings.py).
    3. Overrides from `userData/settings.json` for keys in `MODIFIABLE_SETTINGS`.

    The same file carries the fleet definition: `profiles`, `load_memory` and
    `openai_api_key`.
    """

    def __init__(self, settings_path: Optional[Path] = None) -> None:
        """Initializes the settings object by loading defaults and the settings file."""
        self.SETTINGS_JSON_PATH: Path = Path(settings_path or default_settings.SETTINGS_JSON_PATH)
        self.profiles: List[Dict[str, Any]] = []
        self.load_memory = False
        self.credential: Optional[str] = None

        self._load_defaults()
        self._load_settings_file()

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from the settings.py module as defaults."""
        for key in dir(default_settings):
            if key.isupper() and key != "SETTINGS_JSON_PATH":
                setattr(self, key, getattr(default_settings, key))
        # A settings file outside the default user data dir brings its own.
        if self.SETTINGS_JSON_PATH != default_settings.SETTINGS_JSON_PATH:
            self.USER_DATA_DIR = self.SETTINGS_JSON_PATH.parent
            self.PROFILES_DIR = self.USER_DATA_DIR / "profiles"
            self.RUNLOGS_DIR = self.USER_DATA_DIR / "runlogs"
            self.APP_LOG_PATH = self.USER_DATA_DIR / "app.log"

    def _load_settings_file(self) -> None:
        """
        Reads the fleet definition and applies whitelisted overrides.
        A missing or malformed file leaves an empty fleet.
        """
        if not self.SETTINGS_JSON_PATH.exists():
            log.warning(f"Settings file '{self.SETTINGS_JSON_PATH}' not found. No workers configured.")
            return

        try:
            with self.SETTINGS_JSON_PATH.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse settings file '{self.SETTINGS_JSON_PATH}': {e}")
            return
        if not isinstance(data, dict):
            log.error(f"Settings file '{self.SETTINGS_JSON_PATH}' must contain a JSON object.")
            return

        profiles = data.get("profiles", [])
        self.profiles = profiles if isinstance(profiles, list) else []
        self.load_memory = bool(data.get("load_memory", False))
        credential = data.get("openai_api_key") or None
        if credential is not None and (not isinstance(credential, str) or "\x00" in credential):
            log.error("Ignoring 'openai_api_key': it must be a plain string.")
            credential = None
        self.credential = credential

        for key, value in data.get("overrides", {}).items():
            if not hasattr(self, key):
                log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                continue
            # Security: Only allow overriding whitelisted settings.
            if key not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
                continue
            original_value = getattr(self, key)
            if isinstance(original_value, bool):
                value = str(value).lower() in ('true', '1', 't', 'yes', 'y')
            elif original_value is not None and not isinstance(value, type(original_value)):
                try:
                    value = type(original_value)(value)
                except (TypeError, ValueError) as e:
                    log.error(f"Could not convert value '{value}' for key '{key}'. Error: {e}")
                    continue
            setattr(self, key, value)
            log.debug(f"Overridden setting: {key} = {value}")

    def apply(self) -> None:
        """Pushes the merged values back onto the settings module so every component sees them."""
        for key in dir(self):
            if key.isupper() and hasattr(default_settings, key):
                setattr(default_settings, key, getattr(self, key))

    def build_worker_specs(self) -> List[WorkerSpec]:
        """
        Resolves one WorkerSpec per configured profile.

        :raises ValueError: If two profiles share a name.
        """
        specs: List[WorkerSpec] = []
        seen = set()
        for profile in self.profiles:
            name = profile.get("name") if isinstance(profile, dict) else None
            if not name:
                log.warning(f"Skipping profile without a name: {profile!r}")
                continue
            if name in seen:
                raise ValueError(f"Profile '{name}' is configured more than once.")
            seen.add(name)
            specs.append(WorkerSpec(
                identity=name,
                profile_path=self.PROFILES_DIR / f"{name}.json",
                user_data_dir=self.USER_DATA_DIR,
                app_path=self.BASE_DIR,
                credential=self.credential,
                load_memory=self.load_memory,
            ))
        return specs
