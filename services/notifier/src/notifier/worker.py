from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

LOGGER = logging.getLogger("jobmatch.notifier")


@dataclass
class DigestJob:
    recipient: str
    merge_fields: dict[str, str] = field(default_factory=dict)
    run_id: int | None = None


class DigestSender(Protocol):
    async def send(self, job: DigestJob) -> None: ...


class LogDigestSender:
    """Fallback sender used when no Mailchimp credentials are configured."""

    async def send(self, job: DigestJob) -> None:
        filled = sum(1 for key, value in job.merge_fields.items() if key.endswith("_TITLE") and value)
        LOGGER.info(
            json.dumps(
                {
                    "event": "digest_logged",
                    "recipient": job.recipient,
                    "run_id": job.run_id,
                    "jobs": filled,
                }
            )
        )


class DigestWorker:
    def __init__(self, sender: DigestSender | None = None) -> None:
        self.queue: asyncio.Queue[DigestJob] = asyncio.Queue()
        self.sender: DigestSender = sender or LogDigestSender()
        self.sent = 0
        self.failed = 0

    async def enqueue(self, job: DigestJob) -> int:
        await self.queue.put(job)
        return self.queue.qsize()

    async def run(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self.sender.send(job)
                self.sent += 1
            except Exception as exc:
                self.failed += 1
                LOGGER.error(
                    json.dumps(
                        {
                            "event": "digest_send_failed",
                            "recipient": job.recipient,
                            "run_id": job.run_id,
                            "error": str(exc),
                        }
                    )
                )
            finally:
                self.queue.task_done()
