"""Background jobs."""

from .periodic import PeriodicTask
from .summaries import DEFAULT_SUMMARY_INTERVAL, SummaryWorker, build_summary

__all__ = ["DEFAULT_SUMMARY_INTERVAL", "PeriodicTask", "SummaryWorker", "build_summary"]
