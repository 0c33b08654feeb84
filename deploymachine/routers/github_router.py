# routers/github_router.py

"""
GitHub webhook listener
"""

import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request

logger = logging.getLogger(__name__)


def verify_signature(secret: str, body: bytes, signature: Optional[str], signature_256: Optional[str]) -> bool:
    """Check the X-Hub-Signature-256 header, or the legacy sha1 X-Hub-Signature"""
    if signature_256:
        algorithm, received = "sha256", signature_256
    elif signature:
        algorithm, received = "sha1", signature
    else:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, getattr(hashlib, algorithm)).hexdigest()
    return hmac.compare_digest(f"{algorithm}={expected}", received)


def create_github_router(hook_path: str) -> APIRouter:
    router = APIRouter(tags=["GitHub"])

    @router.post(hook_path)
    async def github_callback(
            request: Request,
            x_github_event: Optional[str] = Header(None),
            x_github_delivery: Optional[str] = Header(None),
            x_hub_signature: Optional[str] = Header(None),
            x_hub_signature_256: Optional[str] = Header(None)
    ):
        """Receive a GitHub notification and queue the matching actions"""
        body = await request.body()
        logger.info(f"POST {hook_path} - event={x_github_event} delivery={x_github_delivery}")

        if not x_github_event:
            raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

        secret = request.app.state.settings.hook_secret
        if secret and not verify_signature(secret, body, x_hub_signature, x_hub_signature_256):
            logger.warning(f"Invalid signature for delivery {x_github_delivery}")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            logger.warning(f"Invalid JSON payload for delivery {x_github_delivery}")
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        if x_github_event == "ping":
            return {"ok": True}

        queued = await request.app.state.hook_service.handle_delivery(x_github_event, payload)
        return {"ok": True, "queued": queued}

    return router
