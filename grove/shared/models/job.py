"""Background job model."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.RUNNING)


class JobType(str, Enum):
    SHELL = "shell"
    TOOL = "tool"


@dataclass
class Job:
    id: str
    type: JobType
    command: str
    working_directory: str
    status: JobStatus = JobStatus.QUEUED
    branch_id: str | None = None
    output: str | None = None
    error: str | None = None
    created_at: str = ""
    completed_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "command": self.command,
            "working_directory": self.working_directory,
            "status": self.status.value,
            "branch_id": self.branch_id,
            "output": self.output,
            "error": self.error,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }
