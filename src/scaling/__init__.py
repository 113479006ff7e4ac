# src/scaling/__init__.py
from .models import ScaleAction, Decision, ScaleResult
from .decision_engine import DecisionEngine
from .cooldown import (
    CooldownStore,
    CooldownTracker,
    InMemoryCooldownStore,
    DatabaseCooldownStore,
)
from .scaler import Scaler
from .scheduler import AutoscaleScheduler

__all__ = [
    'ScaleAction',
    'Decision',
    'ScaleResult',
    'DecisionEngine',
    'CooldownStore',
    'CooldownTracker',
    'InMemoryCooldownStore',
    'DatabaseCooldownStore',
    'Scaler',
    'AutoscaleScheduler'
]

__version__ = '1.0.0'
