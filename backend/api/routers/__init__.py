"""API Routers package."""
from . import sites, attendance, calendars, workers

__all__ = ['sites', 'attendance', 'calendars', 'workers']
