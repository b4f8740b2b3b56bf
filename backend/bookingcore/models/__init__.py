from bookingcore.models.user import User, UserRestaurantStats, FlaggedUser, RestaurantStats
from bookingcore.models.booking import (
    Booking,
    BookingStatus,
    BookingStatusHistory,
    BookingTable,
    OfferRedemption,
    ProcessedEvent,
)
from bookingcore.models.loyalty import LoyaltyRule, LoyaltyTransaction, LoyaltyBalance
from bookingcore.models.notification import (
    PushSubscription,
    NotificationPreference,
    OutboxEntry,
    NotificationHistory,
    UserNotification,
)
from bookingcore.models.task import ScheduledTask

__all__ = [
    "User", "UserRestaurantStats", "FlaggedUser", "RestaurantStats",
    "Booking", "BookingStatus", "BookingStatusHistory", "BookingTable", "OfferRedemption",
    "ProcessedEvent",
    "LoyaltyRule", "LoyaltyTransaction", "LoyaltyBalance",
    "PushSubscription", "NotificationPreference", "OutboxEntry", "NotificationHistory",
    "UserNotification",
    "ScheduledTask",
]
