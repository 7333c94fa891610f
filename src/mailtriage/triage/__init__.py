"""Per-message triage pipeline."""

from mailtriage.triage.pipeline import MessageSink, TriagePipeline

__all__ = ["MessageSink", "TriagePipeline"]
