"""
Jobs module.
Contains the job base class and the job type registry.
"""

from tubeworker.jobs.job import Job
from tubeworker.jobs.registry import JobFactory, JobRegistry

__all__ = [
    "Job",
    "JobFactory",
    "JobRegistry",
]
