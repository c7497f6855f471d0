#!/usr/bin/env python3
"""
Questline Hot Config Reload v1.0
Watch the JSON config file and apply retry/relay tuning without restart.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class ConfigChange:
    """Represents a config change event"""
    key: str
    old_value: Any
    new_value: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _lookup(config: Dict[str, Any], key: str, default: Any = _MISSING) -> Any:
    """Resolve a flat key or a dot path ("retry.max_retries") in a nested dict."""
    if not key:
        return default
    if key in config:
        return config[key]

    node: Any = config
    for part in key.split("."):
        if not part or not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


class ConfigWatcher:
    """
    Watch config files for changes and trigger callbacks.

    Features:
    - File modification detection
    - Dot-path access into nested sections
    - Config validation before applying
    - Callback system for change notifications
    """

    def __init__(
        self,
        config_path: str = "config.json",
        poll_interval: float = 5.0
    ):
        self.config_path = Path(config_path)
        self.poll_interval = poll_interval

        self._current_config: Dict[str, Any] = {}
        self._last_mtime: float = 0
        self._callbacks: Dict[str, List[Callable]] = {}
        self._validators: Dict[str, Callable] = {}

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

        self._load_config()

    def _read_file(self) -> Dict[str, Any]:
        with open(self.config_path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("config root must be a JSON object")
        return data

    def _load_config(self) -> bool:
        """Load config from file"""
        if not self.config_path.exists():
            logger.warning(f"Config file not found: {self.config_path}")
            return False

        try:
            new_config = self._read_file()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config: {e}")
            return False

        errors = self._validate_config(new_config)
        if errors:
            logger.error(f"Config validation failed: {errors}")
            return False

        with self._lock:
            self._last_mtime = self.config_path.stat().st_mtime
            self._current_config = new_config
        logger.info(f"Config loaded: {self.config_path}")
        return True

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value by flat key or dot path"""
        with self._lock:
            return _lookup(self._current_config, key, default)

    def get_all(self) -> Dict[str, Any]:
        """Get entire config"""
        with self._lock:
            return self._current_config.copy()

    def on_change(self, key: str, callback: Callable[[ConfigChange], None]):
        """
        Register callback for config key changes.

        Args:
            key: Top-level config key to watch (use "*" for all changes)
            callback: Function to call with ConfigChange
        """
        self._callbacks.setdefault(key, []).append(callback)

    def add_validator(self, key: str, validator: Callable[[Any], bool]):
        """
        Add a validator for a config key.

        Args:
            key: Config key or dot path to validate
            validator: Function that returns True if value is valid
        """
        self._validators[key] = validator

    def _validate_config(self, new_config: Dict[str, Any]) -> List[str]:
        """Validate new config, return list of errors"""
        errors = []

        for key, validator in self._validators.items():
            value = _lookup(new_config, key)
            if value is _MISSING:
                continue
            try:
                if not validator(value):
                    errors.append(f"Validation failed for '{key}'")
            except Exception as e:
                errors.append(f"Validator error for '{key}': {e}")

        return errors

    def _notify_changes(self, old_config: Dict[str, Any], new_config: Dict[str, Any]):
        """Notify callbacks of changes"""
        all_keys = set(old_config.keys()) | set(new_config.keys())

        for key in sorted(all_keys):
            old_val = old_config.get(key)
            new_val = new_config.get(key)
            if old_val == new_val:
                continue

            change = ConfigChange(key=key, old_value=old_val, new_value=new_val)
            logger.info(f"Config changed: {key} = {new_val}")

            for callback in self._callbacks.get(key, []) + self._callbacks.get("*", []):
                try:
                    callback(change)
                except Exception as e:
                    logger.error(f"Callback error for {key}: {e}")

    def check_for_changes(self) -> bool:
        """Reload if the file's mtime moved forward. Returns True when a new config was applied."""
        if not self.config_path.exists():
            return False

        try:
            current_mtime = self.config_path.stat().st_mtime
            if current_mtime <= self._last_mtime:
                return False

            logger.info("Config file modified, reloading...")
            new_config = self._read_file()
        except (OSError, ValueError) as e:
            logger.error(f"Error checking config: {e}")
            return False

        errors = self._validate_config(new_config)
        if errors:
            logger.error(f"Config validation failed: {errors}")
            # Remember the mtime so a broken file is not re-read every poll
            self._last_mtime = current_mtime
            return False

        with self._lock:
            old_config = self._current_config.copy()
            self._current_config = new_config
            self._last_mtime = current_mtime

        self._notify_changes(old_config, new_config)
        return True

    def _watch_loop(self):
        """Background thread watching for changes"""
        logger.info(f"Config watcher started: {self.config_path}")

        while self._running:
            self.check_for_changes()
            time.sleep(self.poll_interval)

        logger.info("Config watcher stopped")

    def start(self):
        """Start watching for config changes"""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()

    def stop(self):
        """Stop watching for config changes"""
        self._running = False
        if self._thread:
            self._thread.join(timeout=self.poll_interval * 2)
            self._thread = None

    def reload(self) -> bool:
        """Force reload config"""
        with self._lock:
            old_config = self._current_config.copy()

        if self._load_config():
            self._notify_changes(old_config, self.get_all())
            return True
        return False


# =============================================================================
# GLOBAL CONFIG INSTANCE
# =============================================================================

_config: Optional[ConfigWatcher] = None


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def add_default_validators(watcher: ConfigWatcher):
    """Validators for the tuning keys the turn pipeline reads."""
    watcher.add_validator("retry.max_retries", lambda v: isinstance(v, int) and 0 <= v <= 10)
    watcher.add_validator("retry.base_delay", lambda v: _is_number(v) and v >= 0)
    watcher.add_validator("retry.max_delay", lambda v: _is_number(v) and v >= 0)
    watcher.add_validator("turn_deadline", lambda v: _is_number(v) and v > 0)
    watcher.add_validator("relay.buffer_blocks", lambda v: isinstance(v, bool))
    watcher.add_validator("assessment.delimiter", lambda v: isinstance(v, str) and len(v) == 1)
    watcher.add_validator("llm.temperature", lambda v: _is_number(v) and 0 <= v <= 2)
    watcher.add_validator("log_level", lambda v: isinstance(v, str) and v.upper() in logging._nameToLevel)


def init_config(config_path: str = "config.json", watch: bool = True) -> ConfigWatcher:
    """
    Initialize global config instance.

    Args:
        config_path: Path to config file
        watch: Enable file watching

    Returns:
        ConfigWatcher instance
    """
    global _config

    _config = _build_watcher(config_path)

    if watch:
        _config.start()

    return _config


def _build_watcher(config_path: str) -> ConfigWatcher:
    watcher = ConfigWatcher(config_path)
    add_default_validators(watcher)
    errors = watcher._validate_config(watcher.get_all())
    if errors:
        logger.error(f"Config validation failed, using defaults: {errors}")
        with watcher._lock:
            watcher._current_config = {}
    return watcher


def get_config() -> ConfigWatcher:
    """Get global config instance"""
    global _config

    if _config is None:
        _config = init_config(watch=False)

    return _config


def get(key: str, default: Any = None) -> Any:
    """Shorthand for getting config value"""
    return get_config().get(key, default)
