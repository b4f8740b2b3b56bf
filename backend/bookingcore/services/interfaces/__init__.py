"""
Service interfaces for dependency inversion.
Allows swapping delivery transports without changing the worker.
"""

from .channel import AttemptOutcome, DeliveryChannel, DeliveryReport
from .in_app_channel import InAppChannel

__all__ = ['AttemptOutcome', 'DeliveryChannel', 'DeliveryReport', 'InAppChannel']
