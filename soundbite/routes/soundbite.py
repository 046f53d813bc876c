"""Soundbite job endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator

from soundbite.idempotency.policy import PolicyRegistry, idempotent, policy_route
from soundbite.idempotency.store import DEFAULT_TTL_MS
from soundbite.services.soundbite import (
    DEFAULT_USER_ID,
    DEFAULT_VOICE_ID,
    MAX_TEXT_LENGTH,
    SUPPORTED_VOICES,
    JobRepository,
    SoundbiteJob,
)

log = logging.getLogger(__name__)


class CreateSoundbiteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    voice_id: str = Field(DEFAULT_VOICE_ID, alias="voiceId")
    user_id: str = Field(DEFAULT_USER_ID, alias="userId", min_length=1, max_length=128)

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value

    @field_validator("voice_id")
    @classmethod
    def _supported_voice(cls, value: str) -> str:
        if value not in SUPPORTED_VOICES:
            raise ValueError(f"unsupported voice '{value}'")
        return value


def get_jobs(request: Request) -> JobRepository:
    return request.app.state.jobs


def job_payload(job: SoundbiteJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "text": job.text,
        "voiceId": job.voice_id,
        "userId": job.user_id,
        "createdAt": job.created_at.isoformat().replace("+00:00", "Z"),
    }


def build_router(registry: PolicyRegistry) -> APIRouter:
    router = APIRouter(prefix="/soundbite", tags=["soundbites"])

    @policy_route(
        router,
        registry,
        "",
        idempotent(required=True, ttl_ms=DEFAULT_TTL_MS),
        status_code=201,
    )
    async def create_soundbite(
        payload: CreateSoundbiteRequest,
        request: Request,
        jobs: JobRepository = Depends(get_jobs),
    ) -> Dict[str, Any]:
        key = getattr(request.state, "idempotency_key", None)
        job = await jobs.create(
            SoundbiteJob(
                text=payload.text,
                voice_id=payload.voice_id,
                user_id=payload.user_id,
                idempotency_key=key,
            )
        )
        log.info("soundbite job %s created (voice=%s)", job.id, job.voice_id)
        return job_payload(job)

    @router.get("/{job_id}")
    async def get_soundbite(job_id: str, jobs: JobRepository = Depends(get_jobs)) -> Dict[str, Any]:
        job = await jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Soundbite with ID '{job_id}' was not found")
        return job_payload(job)

    return router
