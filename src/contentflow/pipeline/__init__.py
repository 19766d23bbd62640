"""Pipeline module for contentflow."""

from contentflow.pipeline.base import StageContext, StageProcessor

__all__ = ["StageContext", "StageProcessor"]
