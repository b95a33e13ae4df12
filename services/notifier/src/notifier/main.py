from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from jobcommon.utils import now_utc_iso
from pydantic import BaseModel, EmailStr, Field

from notifier.config import NotifierSettings
from notifier.mailchimp import build_sender
from notifier.worker import DigestJob, DigestWorker

LOGGER = logging.getLogger("jobmatch.notifier")

settings = NotifierSettings.from_env()
worker = DigestWorker(build_sender(settings))
worker_task: asyncio.Task | None = None


class DigestRecipient(BaseModel):
    email: EmailStr
    merge_fields: dict[str, str] = Field(default_factory=dict)


class DigestRequest(BaseModel):
    run_id: int | None = None
    digests: list[DigestRecipient] = Field(default_factory=list)


@asynccontextmanager
async def lifespan(_: FastAPI):
    global worker_task
    worker_task = asyncio.create_task(worker.run())
    try:
        yield
    finally:
        worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker_task
        close_sender = getattr(getattr(worker, "sender", None), "aclose", None)
        if close_sender is not None:
            await close_sender()


app = FastAPI(title="Jobmatch Notifier", version="0.2.0", lifespan=lifespan)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "service": "notifier"}


@app.post("/cron/digest")
async def trigger_digest(payload: DigestRequest) -> dict[str, str | int | None]:
    queued = 0
    for digest in payload.digests:
        queued = await worker.enqueue(
            DigestJob(
                recipient=str(digest.email),
                merge_fields=digest.merge_fields,
                run_id=payload.run_id,
            )
        )
    LOGGER.info(
        json.dumps(
            {"event": "digests_queued", "run_id": payload.run_id, "count": len(payload.digests)}
        )
    )

    return {
        "status": "queued",
        "run_id": payload.run_id,
        "queued_jobs": queued,
        "scheduled_at": now_utc_iso(),
    }
