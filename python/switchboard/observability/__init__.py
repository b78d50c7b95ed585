from .event_log import CommunicationEventLog

__all__ = ["CommunicationEventLog"]
