import json
import threading

import pytest

from agent_core import Config, Log
from agent_llm import ModelResponse


@pytest.fixture(autouse=True)
def quiet_agent(monkeypatch):
    """Mute console output and keep tests away from user-level config."""
    Log.set_silent(True)
    monkeypatch.setattr(Config, "ENABLE_MCP", False)
    monkeypatch.setattr(Config, "LLM_RETRY_DELAY", 0.0)
    monkeypatch.setattr(Config, "DEBUG", False)
    yield
    Log.set_silent(False)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws.resolve()


def native_call(name, arguments, call_id=None):
    """One tool call the way an OpenAI-compatible server streams it back."""
    return {"id": call_id or f"call_{name}", "type": "function",
            "function": {"name": name, "arguments": json.dumps(arguments)}}


class ScriptedModel:
    """
    Stand-in for LLMClient. *script* is either a list of ModelResponse
    (returned in order, the last one repeated) or a callable
    (messages, tools) -> ModelResponse.
    """

    def __init__(self, script):
        self.script = script
        self.calls  = []
        self._lock  = threading.Lock()

    def chat(self, messages, tools, on_token=None):
        with self._lock:
            self.calls.append({"messages": [dict(m) for m in messages],
                               "tools": [t["function"]["name"] for t in tools]})
            index = len(self.calls) - 1
        if callable(self.script):
            return self.script(messages, tools)
        return self.script[min(index, len(self.script) - 1)]


@pytest.fixture
def scripted():
    return ScriptedModel


@pytest.fixture
def call():
    return native_call


@pytest.fixture
def reply():
    def _reply(content="", tool_calls=None, streamed=False):
        return ModelResponse(content, tool_calls or [], "stop", streamed)
    return _reply
