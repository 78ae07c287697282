"""Viewer notification: artifact change detection and broadcast."""

from .change_detector import ChangeDetector, ChangedSet
from .notifier import Notifier

__all__ = ["ChangeDetector", "ChangedSet", "Notifier"]
