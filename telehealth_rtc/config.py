"""
Configuration management for the telehealth communication core.

Handles loading/saving user preferences to a JSON config file.
"""

from __future__ import annotations

import copy
import json
import platform
from pathlib import Path
from typing import Any, Optional

from telehealth_rtc.logging_config import get_logger

logger = get_logger("config")


def _default_capture_devices() -> dict[str, Any]:
    """FFmpeg input formats/devices used by aiortc's MediaPlayer on this OS."""
    system = platform.system()
    if system == "Darwin":
        return {
            "audio_format": "avfoundation",
            "audio_device": "none:default",
            "video_format": "avfoundation",
            "video_device": "default:none",
        }
    if system == "Windows":
        return {
            "audio_format": "dshow",
            "audio_device": "audio=Microphone",
            "video_format": "dshow",
            "video_device": "video=Integrated Camera",
        }
    return {
        "audio_format": "pulse",
        "audio_device": "default",
        "video_format": "v4l2",
        "video_device": "/dev/video0",
    }


class Config:
    """
    Communication core configuration with persistent storage.
    """

    DEFAULT_CONFIG = {
        "relay": {
            "url": "http://localhost:5000",
            "transports": ["websocket", "polling"],
            "connect_timeout": 10.0,  # seconds
            "reconnect_attempts": 5,
            "reconnect_base_delay": 1.0,  # seconds, doubled per attempt
        },
        "rtc": {
            "ice_servers": [
                "stun:stun.l.google.com:19302",
                "stun:stun1.l.google.com:19302",
            ],
        },
        "call": {
            "ring_timeout": 45.0,  # seconds before an unanswered incoming call is rejected
            "answer_timeout": 45.0,  # seconds before an unanswered outgoing call is cancelled
            "duration_tick": 1.0,  # seconds between duration updates while connected
            "record_history": True,
        },
        "chat": {
            "typing_debounce": 1.0,  # seconds after last keystroke before typing:false
            "typing_expiry": 3.0,  # seconds before a remote typing indicator is dropped
            "dupe_window": 1.0,  # seconds in which a repeated call signal is ignored
        },
        "media": {
            **_default_capture_devices(),
            "input_device": None,  # sounddevice index or name, None = system default
            "video_size": "640x480",
            "framerate": 30,
        },
        "user": {
            "user_id": "",
            "user_type": "patient",  # patient or doctor
            "display_name": "",
        },
    }

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, uses ~/.telehealth_rtc/config.json
        """
        if config_path is None:
            config_dir = Path.home() / ".telehealth_rtc"
            config_dir.mkdir(exist_ok=True)
            config_path = config_dir / "config.json"

        self.config_path = Path(config_path)
        self._data: dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file, or use defaults if file doesn't exist."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    loaded = json.load(f)
                self._data = self._merge_defaults(loaded)
            except (OSError, ValueError) as exc:
                logger.error(f"Failed to load config from {self.config_path}: {exc}")
                logger.warning("Using default configuration")
                self._data = copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            self._data = copy.deepcopy(self.DEFAULT_CONFIG)

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                json.dump(self._data, f, indent=2)
        except OSError as exc:
            logger.error(f"Failed to save config to {self.config_path}: {exc}")

    def _merge_defaults(self, loaded: dict[str, Any]) -> dict[str, Any]:
        """Merge loaded config with defaults to handle missing keys."""
        result = copy.deepcopy(self.DEFAULT_CONFIG)
        for section_key, section_defaults in self.DEFAULT_CONFIG.items():
            if section_key in loaded and isinstance(section_defaults, dict):
                result[section_key].update(loaded[section_key])
            elif section_key in loaded:
                result[section_key] = loaded[section_key]
        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self._data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self._data:
            self._data[section] = {}
        self._data[section][key] = value

    def get_section(self, section: str) -> dict[str, Any]:
        """Get an entire configuration section."""
        return self._data.get(section, {}).copy()

    @property
    def relay_url(self) -> str:
        return self.get("relay", "url", "http://localhost:5000")

    @relay_url.setter
    def relay_url(self, value: str) -> None:
        self.set("relay", "url", value)

    @property
    def relay_transports(self) -> list[str]:
        return list(self.get("relay", "transports", ["websocket", "polling"]))

    @property
    def connect_timeout(self) -> float:
        return float(self.get("relay", "connect_timeout", 10.0))

    @property
    def reconnect_policy(self) -> tuple[int, float]:
        """Get (attempts, base_delay_seconds) for reconnecting to the relay."""
        attempts = int(self.get("relay", "reconnect_attempts", 5))
        delay = float(self.get("relay", "reconnect_base_delay", 1.0))
        return (attempts, delay)

    @property
    def ice_servers(self) -> list[str]:
        """STUN/TURN URLs handed to the peer transport."""
        return list(self.get("rtc", "ice_servers", []))

    @ice_servers.setter
    def ice_servers(self, value: list[str]) -> None:
        self.set("rtc", "ice_servers", list(value))

    @property
    def ring_timeout(self) -> float:
        return float(self.get("call", "ring_timeout", 45.0))

    @ring_timeout.setter
    def ring_timeout(self, value: float) -> None:
        if value <= 0:
            raise ValueError("Ring timeout must be positive")
        self.set("call", "ring_timeout", value)

    @property
    def answer_timeout(self) -> float:
        return float(self.get("call", "answer_timeout", 45.0))

    @answer_timeout.setter
    def answer_timeout(self, value: float) -> None:
        if value <= 0:
            raise ValueError("Answer timeout must be positive")
        self.set("call", "answer_timeout", value)

    @property
    def duration_tick(self) -> float:
        return float(self.get("call", "duration_tick", 1.0))

    @property
    def record_history(self) -> bool:
        return bool(self.get("call", "record_history", True))

    @property
    def typing_debounce(self) -> float:
        return float(self.get("chat", "typing_debounce", 1.0))

    @typing_debounce.setter
    def typing_debounce(self, value: float) -> None:
        self.set("chat", "typing_debounce", value)

    @property
    def typing_expiry(self) -> float:
        return float(self.get("chat", "typing_expiry", 3.0))

    @typing_expiry.setter
    def typing_expiry(self, value: float) -> None:
        self.set("chat", "typing_expiry", value)

    @property
    def dupe_window(self) -> float:
        return float(self.get("chat", "dupe_window", 1.0))

    @property
    def audio_input_device(self) -> Optional[int | str]:
        return self.get("media", "input_device")

    @audio_input_device.setter
    def audio_input_device(self, value: Optional[int | str]) -> None:
        self.set("media", "input_device", value)

    @property
    def user_id(self) -> str:
        return self.get("user", "user_id", "")

    @user_id.setter
    def user_id(self, value: str) -> None:
        self.set("user", "user_id", value)

    @property
    def user_type(self) -> str:
        return self.get("user", "user_type", "patient")

    @user_type.setter
    def user_type(self, value: str) -> None:
        if value not in ("patient", "doctor"):
            raise ValueError(f"Invalid user type: {value}")
        self.set("user", "user_type", value)

    @property
    def display_name(self) -> str:
        return self.get("user", "display_name", "")

    @display_name.setter
    def display_name(self, value: str) -> None:
        self.set("user", "display_name", value)
