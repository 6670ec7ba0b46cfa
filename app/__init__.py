# Import all models to ensure they are registered with SQLModel
from app.models import fleet, sync, alert
from app.core import config, deps
from app.database import engine

__all__ = [
    "fleet",
    "sync",
    "alert",
    "config",
    "deps",
    "engine",
]
