# src/events/__init__.py
from .models import ScaleEvent, EventAction
from .store import ScaleEventStore

__all__ = [
    'ScaleEvent',
    'EventAction',
    'ScaleEventStore'
]

__version__ = '1.0.0'
