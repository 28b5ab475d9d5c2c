from .session import Notifier, TelehealthFlowSession

__all__ = ["Notifier", "TelehealthFlowSession"]
