import hashlib
import hmac
import json
import logging
from typing import List, Optional, Dict, Any

import httpx

from research_app.models.job import ResearchJob, JobStatus, utcnow

logger = logging.getLogger(__name__)


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the request body, sent as the X-Signature header."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """
    Posts research.completed / research.failed events to the configured URLs.
    Delivery problems are logged and never propagate to the job.
    """
    def __init__(
        self,
        urls: List[str],
        secret: str = "",
        timeout: float = 10,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.urls = list(urls)
        self.secret = secret
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def build_payload(job: ResearchJob) -> Dict[str, Any]:
        event = "research.completed" if job.status == JobStatus.COMPLETED else "research.failed"
        data: Dict[str, Any] = {
            "id": job.id,
            "query": job.query,
            "template_id": job.template_id,
            "status": job.status.value,
            "progress": job.progress,
            "sources": job.sources.relevant,
        }
        if job.report is not None:
            data["report_title"] = job.report.title
        if job.error:
            data["error"] = job.error
            data["error_message"] = job.error_message
        return {"event": event, "timestamp": utcnow().isoformat(), "data": data}

    async def notify(self, job: ResearchJob) -> int:
        """Returns the number of URLs that accepted the event."""
        if not self.urls:
            return 0

        body = json.dumps(self.build_payload(job)).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Signature"] = sign_payload(body, self.secret)

        delivered = 0
        for url in self.urls:
            try:
                response = await self.client.post(url, content=body, headers=headers)
                response.raise_for_status()
                delivered += 1
            except httpx.HTTPError as e:
                logger.warning(f"Job {job.id}: webhook delivery to {url} failed: {e}")
        logger.info(f"Job {job.id}: webhook delivered to {delivered}/{len(self.urls)} endpoints.")
        return delivered

    async def close(self):
        await self.client.aclose()
