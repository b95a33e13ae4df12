from __future__ import annotations

import asyncio
import hashlib
import json
import logging

import httpx

from notifier.config import NotifierConfigurationError, NotifierSettings
from notifier.worker import DigestJob, DigestSender, LogDigestSender

LOGGER = logging.getLogger("jobmatch.notifier.mailchimp")


class MailchimpError(RuntimeError):
    pass


def datacenter_from_key(api_key: str) -> str:
    _, _, datacenter = api_key.strip().rpartition("-")
    if not datacenter or datacenter == api_key.strip():
        raise NotifierConfigurationError("MAILCHIMP_API_KEY has no datacenter suffix")
    return datacenter


def subscriber_hash(email: str) -> str:
    return hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()


class MailchimpDigestSender:
    """Writes each digest into the subscriber's merge fields on the audience list."""

    def __init__(
        self,
        api_key: str,
        *,
        list_id: str | None = None,
        spacing_seconds: float = 0.1,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.list_id = list_id
        self.spacing_seconds = spacing_seconds
        self._client = httpx.AsyncClient(
            base_url=f"https://{datacenter_from_key(api_key)}.api.mailchimp.com/3.0",
            headers={"Authorization": f"Bearer {api_key.strip()}"},
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def resolve_list_id(self) -> str:
        if self.list_id:
            return self.list_id
        response = await self._client.get("/lists")
        if response.status_code >= 400:
            raise MailchimpError(f"Failed to fetch Mailchimp lists: {response.status_code}")
        lists = response.json().get("lists") or []
        if not lists or not lists[0].get("id"):
            raise MailchimpError("No Mailchimp list found")
        self.list_id = str(lists[0]["id"])
        LOGGER.info(json.dumps({"event": "mailchimp_list_resolved", "list_id": self.list_id}))
        return self.list_id

    async def send(self, job: DigestJob) -> None:
        list_id = await self.resolve_list_id()
        # Stay under Mailchimp's rate limit of roughly ten calls per second.
        await asyncio.sleep(self.spacing_seconds)
        response = await self._client.patch(
            f"/lists/{list_id}/members/{subscriber_hash(job.recipient)}",
            json={"merge_fields": job.merge_fields},
        )
        if response.status_code >= 400:
            raise MailchimpError(
                f"Failed to update {job.recipient}: {response.status_code} - {response.text}"
            )
        LOGGER.info(
            json.dumps(
                {"event": "mailchimp_member_updated", "recipient": job.recipient, "run_id": job.run_id}
            )
        )


def build_sender(
    settings: NotifierSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DigestSender:
    if not settings.mailchimp_api_key:
        return LogDigestSender()
    return MailchimpDigestSender(
        settings.mailchimp_api_key,
        list_id=settings.mailchimp_list_id,
        spacing_seconds=settings.send_spacing_seconds,
        timeout_seconds=settings.request_timeout_seconds,
        transport=transport,
    )
