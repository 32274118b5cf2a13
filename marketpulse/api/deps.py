from marketpulse.config import settings
from marketpulse.services.queue import QueueClient

_queue: QueueClient | None = None


def get_queue() -> QueueClient:
    """FastAPI dependency returning the process-wide queue client."""
    global _queue
    if _queue is None:
        _queue = QueueClient.from_settings(settings)
    return _queue
