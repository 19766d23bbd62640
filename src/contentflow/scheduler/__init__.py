"""Scheduled publishing."""

from contentflow.scheduler.processor import SchedulerProcessor
from contentflow.scheduler.service import Scheduler

__all__ = ["Scheduler", "SchedulerProcessor"]
