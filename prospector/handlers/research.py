"""Research worker -- consumes the ``research`` queue.

For each job: look up the lead, search the web for "{name} {company}",
store the results on the lead and mark it researched.  Any exception
fails the job; the queue records it and moves on.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from prospector.api.web_tools import WebTools
from prospector.store.leads import LeadStore

logger = logging.getLogger(__name__)

# Number of search results kept per research depth
DEPTH_RESULTS = {"quick": 3, "standard": 5, "deep": 10}


class ResearchWorker:
    """Job handler for lead research payloads ``{lead_id, depth}``."""

    def __init__(self, leads: LeadStore, web: WebTools) -> None:
        self._leads = leads
        self._web = web

    async def __call__(self, payload: dict[str, Any]) -> None:
        lead_id = UUID(payload["lead_id"])
        depth = payload.get("depth") or "standard"
        if depth not in DEPTH_RESULTS:
            raise ValueError(f"Invalid research depth: {depth!r}")

        lead = await self._leads.get(lead_id)
        if lead is None:
            raise LookupError(f"Lead not found: {lead_id}")

        query = " ".join(part for part in (lead.name, lead.company) if part)
        results = await self._web.search(query, DEPTH_RESULTS[depth])
        await self._leads.save_research(lead_id, {
            "query": query,
            "depth": depth,
            "results": results,
            "researched_at": datetime.now(UTC).isoformat(),
        })
        logger.info(
            "Researched lead %s (%s): %d result(s)",
            lead_id.hex[:8], depth, len(results),
        )
