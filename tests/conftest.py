import json
from typing import List, Optional, Union

import pytest
from tenacity import wait_none

from healing import CorrectionService, HealingEngine, HealingFlags, RecordingTelemetrySink
from utils.llm_client import ChatRequest, ChatResponse, LLMClient, TokenUsage


class ScriptedLLMClient(LLMClient):
    """LLM client that replays canned replies (strings or exceptions) in order."""

    def __init__(self, replies: Optional[List[Union[str, Exception]]] = None, model: str = "openai/gpt-4o-mini"):
        self.replies = list(replies or [])
        self.model = model
        self.requests: List[ChatRequest] = []

    async def complete(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("ScriptedLLMClient ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatResponse(
            content=reply,
            model=self.model,
            usage=TokenUsage(prompt_tokens=100, completion_tokens=20),
        )


def correction_reply(success: bool = True, method: str = "llm_correction", confidence: float = 0.9, **params) -> str:
    """JSON body in the shape the correction backend returns."""
    body = {
        "success": success,
        "reasoning": "test reply",
        "confidence": confidence,
        "suggestedMethod": method,
    }
    patch = params.pop("correctedPatch", None)
    if patch is not None:
        body["correctedPatch"] = patch
    if params:
        body["correctedParameters"] = params
    return json.dumps(body)


@pytest.fixture
def reply():
    """The ``correction_reply`` builder, as a fixture."""
    return correction_reply


@pytest.fixture
def scripted_client():
    """Factory fixture: ``scripted_client(reply, ...)`` returns a fresh client."""
    def _make(*replies):
        return ScriptedLLMClient(list(replies))
    return _make


@pytest.fixture
def make_service():
    """Build a CorrectionService around a client with no retry backoff."""
    def _make(client, **kwargs):
        return CorrectionService(client=client, retry_wait=wait_none(), **kwargs)
    return _make


@pytest.fixture
def telemetry():
    return RecordingTelemetrySink()


@pytest.fixture
def make_engine(make_service, telemetry):
    """Build a HealingEngine around a scripted client (or no backend at all)."""
    def _make(client=None, flags=None):
        service = make_service(client) if client is not None else None
        return HealingEngine(correction=service, flags=flags or HealingFlags(), telemetry=telemetry)
    return _make
