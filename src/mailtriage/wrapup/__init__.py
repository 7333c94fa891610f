"""Periodic wrap-up reports."""

from mailtriage.wrapup.service import WrapupService, wrapup_window

__all__ = ["WrapupService", "wrapup_window"]
