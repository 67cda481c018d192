"""
Background services for the application.
"""
from kivendi.services.scheduler import start_scheduler, stop_scheduler

__all__ = ["start_scheduler", "stop_scheduler"]
