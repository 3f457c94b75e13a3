"""
Shared fixtures: an in-memory durable store, a fully booted service graph
and a scripted model transport that replays canned responses.
"""

import copy
import itertools
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from autoui.DBConnection_hlpr import DBConnection
from autoui.config import RuntimeConfig
from autoui.durable_store import DurableStore
from autoui.llm_client import LlmResult
from autoui.system_init import init_system


# =============================================================================
# Model response helpers
# =============================================================================

_ids = itertools.count(1)


def tool_use(name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"type": "tool_use", "id": f"toolu_{next(_ids)}", "name": name, "input": args or {}}


def text(value: str) -> Dict[str, Any]:
    return {"type": "text", "text": value}


def message(*blocks: Dict[str, Any]) -> LlmResult:
    return LlmResult(error=None, data={"content": list(blocks), "usage": {"input_tokens": 1, "output_tokens": 1}})


def failure(error: str) -> LlmResult:
    return LlmResult(error=error, data=None)


def authored(source: str) -> LlmResult:
    return message(tool_use("write_component", {"src": source}))


class ScriptedTransport:
    """
    Stands in for ModelTransport: every call is recorded (with a deep copy
    of the messages) and answered with the next scripted result. Once the
    script runs out every call gets `default`.
    """

    def __init__(self, *results: LlmResult, default: Optional[LlmResult] = None):
        self.script: List[LlmResult] = list(results)
        self.default = default or message(text("ok"))
        self.calls: List[Dict[str, Any]] = []

    def push(self, *results: LlmResult) -> None:
        self.script.extend(results)

    async def call(self, system, messages, extras=None, *, source=None) -> LlmResult:
        self.calls.append({
            "system": system,
            "messages": copy.deepcopy(messages),
            "extras": copy.deepcopy(extras or {}),
            "source": source,
        })
        if self.script:
            return self.script.pop(0)
        return self.default

    def sources(self) -> List[str]:
        return [c["source"] for c in self.calls]


# =============================================================================
# Unit sources
# =============================================================================

GREETING_V1 = '''
class Component:
    STATE_KEYS = ("clicks",)

    def __init__(self, ctx):
        self.ctx = ctx
        ctx.state.setdefault("clicks", 0)

    def render(self, inputs, handlers):
        return {"type": "text", "version": 1, "text": "Hello " + str(inputs.get("name") or "there")}
'''

GREETING_V2 = '''
class Component:
    STATE_KEYS = ("clicks",)

    def __init__(self, ctx):
        self.ctx = ctx
        ctx.state.setdefault("clicks", 0)

    def render(self, inputs, handlers):
        return {"type": "text", "version": 2, "text": "Hi " + str(inputs.get("name") or "there")}
'''

GREETING_CRASHING = '''
class Component:
    STATE_KEYS = ("clicks",)

    def __init__(self, ctx):
        self.ctx = ctx

    def render(self, inputs, handlers):
        raise ValueError("render exploded")
'''


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db():
    conn = DBConnection("sqlite://")
    yield conn
    conn.dispose()


@pytest.fixture
def store(db):
    return DurableStore(db.build_db_session_factory())


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest_asyncio.fixture
async def services(store, transport):
    booted = await init_system(RuntimeConfig(api_mode="none"), store=store)
    booted.transport = transport
    yield booted
    await booted.queue.drain()
    await booted.atoms.flush()
