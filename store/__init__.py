"""
Component declarations and per-instance value storage.
"""

from store.registry import AnimatedConfig, ComponentSchema, ComponentType, FieldDef, Lifetime
from store.values import ValueStore, same_value
from store.subscriptions import PushBus, PushEvent
from store.wire import check_round_trip, client_payload
