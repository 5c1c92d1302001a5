"""Infrastructure: the per-shard work queue."""

from rtbf.infra.work_queue import InProcessWorkQueue, Job, JobStatus, WorkItem, WorkQueue

__all__ = ["InProcessWorkQueue", "Job", "JobStatus", "WorkItem", "WorkQueue"]
