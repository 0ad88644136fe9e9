from topic_relay.bindings.models import Binding, ModelRef, SessionState
from topic_relay.bindings.store import BindingConflict, BindingStore

__all__ = [
    "Binding",
    "BindingConflict",
    "BindingStore",
    "ModelRef",
    "SessionState",
]
