from bookingcore.schemas.booking import (
    BookingCreate, BookingResponse, TransitionRequest, TransitionResponse, StatusHistoryResponse,
    ExpiryResponse,
)
from bookingcore.schemas.notification import (
    BroadcastRequest, BroadcastResponse, SubscribeRequest, SubscribeResponse, UnsubscribeRequest,
    PreferenceUpdate, PreferenceResponse, DrainResponse, TaskRunResponse,
)
from bookingcore.schemas.webhook import WebhookEnvelope, WebhookResponse

__all__ = [
    "BookingCreate", "BookingResponse", "TransitionRequest", "TransitionResponse",
    "StatusHistoryResponse", "ExpiryResponse",
    "BroadcastRequest", "BroadcastResponse", "SubscribeRequest", "SubscribeResponse",
    "UnsubscribeRequest", "PreferenceUpdate", "PreferenceResponse", "DrainResponse",
    "TaskRunResponse",
    "WebhookEnvelope", "WebhookResponse",
]
