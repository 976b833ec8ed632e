from __future__ import annotations

import logging

import requests

log = logging.getLogger("stockledger.broadcast")


class BroadcastService:
    """Best-effort change notifications for connected clients.

    Nothing in the ledger depends on delivery; failures are logged only.
    """

    def __init__(self, url: str | None, timeout: float = 3.0):
        self.url = (url or "").strip() or None
        self.timeout = float(timeout)

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def publish(self, event: str, payload: dict) -> bool:
        if not self.enabled:
            return False
        try:
            r = requests.post(self.url, json={"event": event, "payload": payload}, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            log.warning("broadcast_failed event=%s url=%s error=%s", event, self.url, e)
            return False
        log.debug("broadcast_sent event=%s", event)
        return True
