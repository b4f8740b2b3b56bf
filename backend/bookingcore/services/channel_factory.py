"""
Delivery channel and service factory.
Configures which channels the worker can deliver through and wires the
process-wide service values held on app.state.
"""

from dataclasses import dataclass
from typing import Optional

from bookingcore.core.config import Settings
from bookingcore.services.cache_service import PreferenceCache
from bookingcore.services.delivery_worker import DeliveryWorker
from bookingcore.services.event_dispatcher import EventDispatcher
from bookingcore.services.interfaces.channel import DeliveryChannel
from bookingcore.services.interfaces.in_app_channel import InAppChannel
from bookingcore.services.push_service import WebPushChannel, WebPushSender
from bookingcore.services.subscription_registry import SubscriptionRegistry
from bookingcore.services.task_queue import TaskQueue

SUPPORTED_CHANNELS = ("push", "in_app")


@dataclass
class CoreServices:
    cache: PreferenceCache
    registry: SubscriptionRegistry
    task_queue: TaskQueue
    dispatcher: EventDispatcher
    worker: DeliveryWorker

    @property
    def channels(self) -> tuple[str, ...]:
        return tuple(self.worker.channels)


def build_channels(registry: SubscriptionRegistry, settings: Settings, sender=None) -> dict[str, DeliveryChannel]:
    """
    Get configured delivery channels, keyed by the outbox `channel` value.

    The push sender can be overridden (tests inject a fake that records
    payloads instead of calling push services).
    """
    channels: list[DeliveryChannel] = [
        WebPushChannel(registry, sender or WebPushSender(settings), settings),
        InAppChannel(),
    ]
    return {channel.name: channel for channel in channels}


def build_services(
    settings: Settings,
    cache: Optional[PreferenceCache] = None,
    sender=None,
) -> CoreServices:
    cache = cache or PreferenceCache(None, settings.PREFERENCE_CACHE_TTL)
    registry = SubscriptionRegistry(cache, settings)
    task_queue = TaskQueue(settings)
    return CoreServices(
        cache=cache,
        registry=registry,
        task_queue=task_queue,
        dispatcher=EventDispatcher(settings, task_queue),
        worker=DeliveryWorker(build_channels(registry, settings, sender), registry, settings),
    )
