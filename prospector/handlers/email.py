"""Email dispatcher -- consumes the ``email`` queue.

Delivery is delegated to an outbound webhook: each job payload is posted
with the lead's address attached, and a 2xx response marks the lead
emailed.  ``send_at`` is passed through for the delivery service to honour.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

import httpx

from prospector.store.leads import LeadStore

logger = logging.getLogger(__name__)


class EmailDispatcher:
    """Job handler for campaign payloads ``{lead_id, campaign_type, send_at}``."""

    def __init__(self, leads: LeadStore, http_client: httpx.AsyncClient, webhook_url: str) -> None:
        self._leads = leads
        self._http = http_client
        self._webhook_url = webhook_url

    async def __call__(self, payload: dict[str, Any]) -> None:
        if not self._webhook_url:
            raise RuntimeError("PROSPECTOR_EMAIL_WEBHOOK_URL is not configured")

        lead_id = UUID(payload["lead_id"])
        lead = await self._leads.get(lead_id)
        if lead is None:
            raise LookupError(f"Lead not found: {lead_id}")
        if not lead.email:
            raise ValueError(f"Lead {lead_id} has no email address")

        response = await self._http.post(
            self._webhook_url,
            json={
                "lead_id": str(lead.id),
                "to": lead.email,
                "name": lead.name,
                "company": lead.company,
                "campaign_type": payload.get("campaign_type", "immediate"),
                "send_at": payload.get("send_at"),
            },
            timeout=15,
        )
        response.raise_for_status()
        await self._leads.set_status(lead_id, "emailed")
        logger.info("Sent %s email to lead %s", payload.get("campaign_type"), lead_id.hex[:8])
