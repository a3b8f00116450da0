import json
import os

from stormbox.constants import DEFAULT_SERVER_URL, DELTA_POLL_INTERVAL_SEC
from stormbox.paths import CONFIG_DIR, CONFIG_FILE, DOWNLOAD_DIR


class Config:
    """Persistent configuration manager."""

    def __init__(self):
        self.load_error = None
        self.data = {
            "server_url": DEFAULT_SERVER_URL,
            "username": "",
            "poll_interval_sec": DELTA_POLL_INTERVAL_SEC,
            "download_dir": DOWNLOAD_DIR,
            "view_mode": "all",
            "log_level": "INFO",
        }
        self.load()

    def load(self):
        self.load_error = None
        if os.path.exists(CONFIG_FILE):
            try:
                with open(CONFIG_FILE, "r", encoding="utf-8") as f:
                    saved = json.load(f)
                if not isinstance(saved, dict):
                    raise ValueError("Config payload must be a JSON object.")
                self.data.update(saved)
            except (OSError, json.JSONDecodeError, TypeError, ValueError) as exc:
                self.load_error = str(exc)

    def save(self):
        os.makedirs(CONFIG_DIR, exist_ok=True)
        with open(CONFIG_FILE, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value
        self.save()
