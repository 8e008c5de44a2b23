"""Ordered fan-out of world events to live subscribers."""

from world_narrator.broadcast.envelope import Envelope
from world_narrator.broadcast.hub import BroadcastHub, SubscriberDroppedError, Subscription, SubscriptionClosedError

__all__ = ["BroadcastHub", "Envelope", "SubscriberDroppedError", "Subscription", "SubscriptionClosedError"]
