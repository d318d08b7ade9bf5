"""Configuration loader and hot-swappable channel registry."""
import logging
import threading
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from msgrelay.config.schema import ProxyConfig, UpstreamChannel
from msgrelay.core.logging import mask_api_key
from msgrelay.metrics.prometheus import key_failures_total

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Load and validate the channel configuration file.

    Accepts YAML as well as plain JSON (``config.json``), since JSON is a
    subset of YAML.
    """

    def __init__(self, config_path: str):
        """
        Args:
            config_path: Path to YAML or JSON configuration file
        """
        self.config_path = Path(config_path)

    def load(self) -> ProxyConfig:
        """Load and validate configuration from file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid config syntax in {self.config_path}: {e}") from e

        try:
            return ProxyConfig.model_validate(raw_config)
        except ValidationError as e:
            raise ValueError(f"Configuration validation failed in {self.config_path}: {e}") from e


class ChannelRegistry:
    """Holds the current configuration snapshot.

    The snapshot is replaced wholesale, so a request that took a snapshot
    keeps a consistent view even if the configuration is reloaded while it
    is in flight.
    """

    def __init__(self, config: Optional[ProxyConfig] = None, loader: Optional[ConfigLoader] = None):
        self._config = config or ProxyConfig()
        self._loader = loader
        self._lock = threading.Lock()

    def snapshot(self) -> ProxyConfig:
        with self._lock:
            return self._config

    def replace(self, config: ProxyConfig) -> None:
        """Atomically swap in a new configuration snapshot."""
        with self._lock:
            self._config = config
        logger.info(
            f"Configuration replaced: {len(config.upstream)} channel(s), "
            f"current={config.current_upstream}, load_balance={config.load_balance.value}"
        )

    def reload(self) -> ProxyConfig:
        """Re-read the configuration file and swap it in.

        A failed load leaves the previous snapshot in place.
        """
        if self._loader is None:
            raise RuntimeError("ChannelRegistry has no loader to reload from")
        config = self._loader.load()
        self.replace(config)
        return config

    def current_channel(self) -> Optional[UpstreamChannel]:
        """Get the currently configured channel, or None if the index is out of range."""
        config = self.snapshot()
        if 0 <= config.current_upstream < len(config.upstream):
            return config.upstream[config.current_upstream]
        return None

    def report_key_failure(self, channel: UpstreamChannel, api_key: str) -> None:
        """Notification hook for a key that failed against ``channel``."""
        key_failures_total.labels(channel=channel.name or "unnamed").inc()
        logger.info(f"Key {mask_api_key(api_key)} failed for channel {channel.name!r}")
