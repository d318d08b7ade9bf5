"""Channel and API key selection."""
import logging
import random
import threading
from typing import Optional, Set

from msgrelay.config.loader import ChannelRegistry
from msgrelay.config.schema import LoadBalanceStrategy, UpstreamChannel
from msgrelay.core.errors import NoChannelConfigured, NoKeyAvailable
from msgrelay.core.key_health import KeyHealthTracker
from msgrelay.core.logging import mask_api_key
from msgrelay.metrics.prometheus import key_selections_total

logger = logging.getLogger(__name__)


class UpstreamSelector:
    """Chooses the active channel and, within it, an API key.

    Only keys within the configured channel are balanced; channels are
    switched by configuration, not per request.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        health_tracker: KeyHealthTracker,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            registry: Source of the current configuration snapshot
            health_tracker: Authoritative key failure state
            rng: Random source for the random strategy
        """
        self.registry = registry
        self.health_tracker = health_tracker
        self._rng = rng or random.Random()
        self._request_counter = 0
        self._lock = threading.Lock()

    @property
    def request_counter(self) -> int:
        with self._lock:
            return self._request_counter

    def select_channel(self) -> UpstreamChannel:
        """Return the currently configured channel.

        Raises:
            NoChannelConfigured: If no channel is configured or it has no keys
        """
        channel = self.registry.current_channel()
        if channel is None:
            raise NoChannelConfigured("No upstream channel is configured")
        if not channel.api_keys:
            raise NoChannelConfigured(f"Upstream channel {channel.name!r} has no API keys")
        return channel

    def select_key(
        self,
        channel: UpstreamChannel,
        excluded_keys: Optional[Set[str]] = None,
        strategy: Optional[LoadBalanceStrategy] = None,
    ) -> str:
        """Select an API key from ``channel``.

        Args:
            channel: Channel to select from
            excluded_keys: Keys already tried during this request
            strategy: Override for the configured load balance strategy

        Returns:
            The selected API key

        Raises:
            NoKeyAvailable: If every key of the channel is excluded
        """
        excluded = excluded_keys or set()
        if strategy is None:
            strategy = self.registry.snapshot().load_balance

        available = self.health_tracker.partition(channel.api_keys, excluded)

        if not available:
            # Every key is excluded or failed: retry the least recently broken one
            fallback = self.health_tracker.oldest_failed(channel.api_keys, excluded)
            if fallback is None:
                raise NoKeyAvailable(f"No API key available for channel {channel.name!r}")
            logger.warning(
                f"All keys for channel {channel.name!r} are failed, "
                f"falling back to oldest failed key {mask_api_key(fallback)}"
            )
            key_selections_total.labels(channel=channel.name or "unnamed", strategy="oldest_failed").inc()
            return fallback

        with self._lock:
            self._request_counter += 1
            counter = self._request_counter

        if strategy == LoadBalanceStrategy.ROUND_ROBIN:
            selected = available[(counter - 1) % len(available)]
        elif strategy == LoadBalanceStrategy.RANDOM:
            selected = self._rng.choice(available)
        else:
            selected = available[0]

        key_selections_total.labels(channel=channel.name or "unnamed", strategy=strategy.value).inc()
        logger.debug(f"Selected key {mask_api_key(selected)} for channel {channel.name!r} ({strategy.value})")
        return selected
