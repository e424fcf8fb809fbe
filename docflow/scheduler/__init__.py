"""Background jobs"""
from .expiration_scheduler import ExpirationScheduler, get_scheduler, start_scheduler, stop_scheduler

__all__ = ["ExpirationScheduler", "get_scheduler", "start_scheduler", "stop_scheduler"]
