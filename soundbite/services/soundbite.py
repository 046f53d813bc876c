"""Soundbite job bookkeeping.

The synthesis pipeline (speech, storage, queueing) lives outside this service;
``JobRepository`` is the seam it plugs into. ``InMemoryJobRepository`` is the
default used for development and tests.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

MAX_TEXT_LENGTH = 3000
DEFAULT_VOICE_ID = "Joanna"
DEFAULT_USER_ID = "anonymous"

SUPPORTED_VOICES = frozenset(
    {
        "Joanna", "Matthew", "Ivy", "Justin", "Kendra", "Kimberly", "Salli",
        "Joey", "Amy", "Brian", "Emma", "Russell", "Nicole", "Olivia",
        "Raveena", "Aditi", "Geraint", "Gwyneth", "Celine", "Chantal",
        "Mathieu", "Lea", "Hans", "Marlene", "Vicki", "Conchita", "Enrique",
        "Lucia", "Mia", "Bianca", "Carla", "Giorgio", "Mizuki", "Takumi",
        "Seoyeon", "Liv", "Lotte", "Ruben", "Ewa", "Jacek", "Jan", "Maja",
        "Ricardo", "Vitoria", "Cristiano", "Ines", "Carmen", "Maxim",
        "Tatyana", "Astrid", "Filiz", "Zhiyu",
    }
)

STATUS_PENDING = "pending"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SoundbiteJob:
    text: str
    voice_id: str = DEFAULT_VOICE_ID
    user_id: str = DEFAULT_USER_ID
    idempotency_key: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = STATUS_PENDING
    created_at: datetime = field(default_factory=_utcnow)


class JobRepository(Protocol):
    async def create(self, job: SoundbiteJob) -> SoundbiteJob: ...

    async def get(self, job_id: str) -> Optional[SoundbiteJob]: ...


class InMemoryJobRepository:
    def __init__(self) -> None:
        self._jobs: Dict[str, SoundbiteJob] = {}

    async def create(self, job: SoundbiteJob) -> SoundbiteJob:
        self._jobs[job.id] = job
        return job

    async def get(self, job_id: str) -> Optional[SoundbiteJob]:
        return self._jobs.get(job_id)

    def __len__(self) -> int:
        return len(self._jobs)
