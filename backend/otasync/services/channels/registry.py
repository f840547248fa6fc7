from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional

from otasync.constants.channels import CHANNELS
from otasync.services.channels.providers.agoda import AgodaAdapter
from otasync.services.channels.providers.airbnb import AirbnbAdapter
from otasync.services.channels.providers.base import BaseChannelAdapter
from otasync.services.channels.providers.booking_com import BookingComAdapter
from otasync.services.channels.providers.direct_web import DirectWebAdapter
from otasync.services.channels.providers.expedia import ExpediaAdapter, HotelsComAdapter
from otasync.services.channels.providers.gds import GDS_BASE_URLS, GdsAdapter

logger = logging.getLogger(__name__)


def build_default_adapters() -> Dict[str, BaseChannelAdapter]:
  adapters: Dict[str, BaseChannelAdapter] = {
    "booking_com": BookingComAdapter(),
    "expedia": ExpediaAdapter(),
    "hotels_com": HotelsComAdapter(),
    "airbnb": AirbnbAdapter(),
    "agoda": AgodaAdapter(),
    "direct_web": DirectWebAdapter(),
  }
  for gds in GDS_BASE_URLS:
    adapters[gds] = GdsAdapter(gds)
  return adapters


class ChannelAdapterRegistry:
  """Closed mapping of channel identifier -> adapter instance.

  Tests and alternative deployments pass their own adapters in; nothing
  outside this class mutates the mapping after construction.
  """

  def __init__(self, adapters: Optional[Mapping[str, BaseChannelAdapter]] = None) -> None:
    source = build_default_adapters() if adapters is None else dict(adapters)
    unknown = [c for c in source if c not in CHANNELS]
    if unknown:
      raise ValueError(f"adapters registered for unknown channels: {', '.join(unknown)}")
    self._adapters: Dict[str, BaseChannelAdapter] = dict(source)

  def get(self, channel: str) -> Optional[BaseChannelAdapter]:
    return self._adapters.get((channel or "").lower())

  def channels(self) -> Iterable[str]:
    return tuple(self._adapters.keys())

  def __contains__(self, channel: object) -> bool:
    return channel in self._adapters


_registry: Optional[ChannelAdapterRegistry] = None


def init_registry(adapters: Optional[Mapping[str, BaseChannelAdapter]] = None) -> ChannelAdapterRegistry:
  global _registry
  _registry = ChannelAdapterRegistry(adapters)
  logger.info("Channel adapter registry ready: %s", ", ".join(sorted(_registry.channels())))
  return _registry


def get_registry() -> ChannelAdapterRegistry:
  """Process-wide registry, created with the built-in adapters on first use."""

  global _registry
  if _registry is None:
    _registry = ChannelAdapterRegistry()
  return _registry


def reset_registry() -> None:
  global _registry
  _registry = None
