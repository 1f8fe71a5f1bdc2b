"""
Background execution: durable job queue and the triggers feeding it.
"""

from .queue import JobRecord, JobStatus, TaskQueue

__all__ = ["TaskQueue", "JobRecord", "JobStatus"]
