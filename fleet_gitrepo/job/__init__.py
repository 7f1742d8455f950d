"""The job module.

This module contains the interface to the executor of fetch-and-apply jobs, a
store backed implementation and a local runner that performs the fetch.
"""

from .executor import JobExecutor, JobHandle, StoreJobExecutor, validate_job
from .runner import LocalJobRunner

__all__ = [
    "JobExecutor",
    "JobHandle",
    "StoreJobExecutor",
    "LocalJobRunner",
    "validate_job",
]
