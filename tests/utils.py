from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Iterable, List, Optional

from fastapi.testclient import TestClient


class ScriptedModelClient:
    """Model stand-in that replays canned replies in order.

    ``gate`` holds every call until it is set, which keeps a session in
    ``processing`` for as long as a test needs. ``error`` is raised instead of
    replying.
    """

    def __init__(
        self,
        replies: Optional[Iterable[str]] = None,
        *,
        error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
        default: str = "Done.",
    ) -> None:
        self.replies: List[str] = list(replies or [])
        self.error = error
        self.gate = gate
        self.default = default
        self.calls: List[List[Dict[str, str]]] = []

    async def stream_reply(self, messages):
        self.calls.append([dict(m) for m in messages])
        if self.gate is not None:
            while not self.gate.is_set():
                await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else self.default
        # Emit in a few chunks like a streaming endpoint would
        for i in range(0, len(reply), 16):
            yield reply[i:i + 16]


def wait_for_status(
    client: TestClient,
    session_id: str,
    expected: Iterable[str],
    *,
    prefix: str = "",
    timeout: float = 5.0,
) -> Dict:
    """Poll the status endpoint until the session reaches one of ``expected``."""
    wanted = set(expected)
    deadline = time.monotonic() + timeout
    while True:
        res = client.get(f"{prefix}/sessions/{session_id}/status")
        assert res.status_code == 200, res.text
        body = res.json()
        if body["session"]["status"] in wanted:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"session {session_id} stuck in {body['session']['status']}, wanted {sorted(wanted)}")
        time.sleep(0.02)
