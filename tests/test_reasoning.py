"""Delta-driven reasoning loop: scheduling, turn handling and tool dispatch."""

import pytest

from autoui.reasoning import (
    MAX_FIRE_COUNT,
    RESHAPE_TOOL,
    ReasoningLoop,
    ReasoningStatus,
    ToolContext,
    ToolDef,
    build_dispatcher,
)
from conftest import failure, message, text, tool_use


def _loop(services, prompt="Summarise the objective", **options):
    options.setdefault("latency", "immediate")
    return ReasoningLoop(services, prompt, **options)


# =============================================================================
# Termination
# =============================================================================

class TestTermination:
    async def test_text_only_turn_finishes(self, services, transport):
        transport.push(message(text("hello")))
        loop = _loop(services, component_id="notes")
        statuses = []
        loop.subscribe(lambda state: statuses.append(state.status))

        loop.update(["first"])
        state = await loop.wait_idle()

        assert state.status is ReasoningStatus.DONE
        assert state.response == {"content": "hello"}
        assert statuses[0] is ReasoningStatus.REASONING
        assert statuses[-1] is ReasoningStatus.DONE
        assert transport.sources() == ["reasoning:notes"]

    async def test_reshape_is_terminal_after_siblings(self, services, transport):
        reshapes = []
        saved = []
        context = ToolContext(
            "planner",
            tools=[ToolDef("save", "Save a note", {"note": "string"}, handler=lambda a: saved.append(a["note"]))],
            dispatch=lambda name, args: saved.append(args["note"]),
            reshape=reshapes.append,
        )
        transport.push(message(
            tool_use("respond", {"content": "partial"}),
            tool_use("save", {"note": "n1"}),
            tool_use(RESHAPE_TOOL, {"reason": "needs a table"}),
        ))
        loop = _loop(services, tool_context=context, max_turns=5)

        loop.update([1])
        state = await loop.wait_idle()

        assert len(transport.calls) == 1
        assert saved == ["n1"]
        assert reshapes == ["needs a table"]
        assert state.status is ReasoningStatus.DONE
        assert state.response == {"content": "partial"}

    async def test_turn_budget_runs_last_calls_once(self, services, transport):
        ticks = []
        tick = ToolDef("tick", "Advance", None, handler=lambda args: ticks.append(1))
        transport.default = message(tool_use("tick"))
        loop = _loop(services, tools=[tick], max_turns=2)

        loop.update([1])
        state = await loop.wait_idle()

        assert len(transport.calls) == 2
        assert len(ticks) == 2
        assert state.status is ReasoningStatus.DONE
        assert state.response is None

    async def test_respond_is_not_terminal(self, services, transport):
        transport.push(
            message(tool_use("respond", {"content": "draft"})),
            message(tool_use("respond", {"content": "final"})),
            message(text("done")),
        )
        loop = _loop(services, max_turns=3)

        loop.update([1])
        state = await loop.wait_idle()

        assert len(transport.calls) == 3
        assert state.response == {"content": "final"}
        results = transport.calls[1]["messages"][-1]["content"]
        assert results[0]["type"] == "tool_result"
        assert results[0]["content"] == "Response received."

    async def test_transport_error(self, services, transport):
        transport.push(failure("No API configured. Set API mode in settings."))
        loop = _loop(services)

        loop.update([1])
        state = await loop.wait_idle()

        assert state.status is ReasoningStatus.ERROR
        assert state.error == "Reasoning error: No API configured. Set API mode in settings."

    async def test_handler_exception_becomes_error_result(self, services, transport):
        def explode(args):
            raise ValueError("bad input")

        transport.push(message(tool_use("fragile", {"x": 1})), message(text("recovered")))
        loop = _loop(services, tools=[ToolDef("fragile", "May fail", {"x": "number"}, handler=explode)])

        loop.update([1])
        state = await loop.wait_idle()

        result = transport.calls[1]["messages"][-1]["content"][0]
        assert result["is_error"] is True
        assert "bad input" in result["content"]
        assert state.status is ReasoningStatus.DONE
        assert state.response == {"content": "recovered"}


# =============================================================================
# Scheduling
# =============================================================================

class TestScheduling:
    async def test_unchanged_deps_do_not_fire(self, services, transport):
        loop = _loop(services)
        loop.update(["a", {"k": 1}])
        await loop.wait_idle()
        loop.update(["a", {"k": 1}])
        await loop.wait_idle()

        assert loop.fire_count == 1
        assert len(transport.calls) == 1

    async def test_fire_ceiling(self, services, transport):
        loop = _loop(services)

        for i in range(MAX_FIRE_COUNT + 5):
            loop.update([i])
        await loop.wait_idle()

        assert loop.fire_count == MAX_FIRE_COUNT
        assert len(transport.calls) == MAX_FIRE_COUNT

    async def test_debounce_collapses_bursts(self, services, transport):
        loop = _loop(services, debounce=0.05)

        loop.update([1])
        loop.update([2])
        loop.update([3])
        await loop.wait_idle()

        assert len(transport.calls) == 1
        user_message = transport.calls[0]["messages"][0]["content"]
        assert "CURRENT INPUT VALUES:\n  [0]: 3" in user_message

    async def test_empty_prompt_skips_run(self, services, transport):
        loop = _loop(services, prompt=lambda prev, cur: "" if cur[0] < 2 else f"now {cur[0]}")

        loop.update([1])
        await loop.wait_idle()
        assert transport.calls == []

        loop.update([2])
        await loop.wait_idle()
        assert transport.calls[0]["messages"][0]["content"].startswith("now 2")

    async def test_dispose_cancels_pending_run(self, services, transport):
        loop = _loop(services, latency="background")
        loop.update([1])
        loop.dispose()
        await loop.wait_idle()

        assert transport.calls == []
        assert not loop.busy

    async def test_keep_stale_shows_previous_response(self, services, transport):
        transport.push(message(tool_use("respond", {"content": "first"})), message(text("end")))
        loop = _loop(services, keep_stale=True)
        loop.update([1])
        await loop.wait_idle()

        seen = []
        loop.subscribe(lambda state: seen.append(state))
        transport.push(message(text("second")))
        loop.update([2])
        state = await loop.wait_idle()

        assert seen[0].status is ReasoningStatus.REASONING
        assert seen[0].stale is True
        assert seen[0].response == {"content": "first"}
        assert state.stale is False
        assert state.response == {"content": "second"}

    async def test_unknown_latency_class(self, services):
        with pytest.raises(ValueError):
            ReasoningLoop(services, "p", latency="eventually")


# =============================================================================
# Prompt assembly
# =============================================================================

class TestPromptAssembly:
    async def test_large_dependency_is_truncated(self, services, transport):
        loop = _loop(services)
        loop.update(["x" * 5000])
        await loop.wait_idle()

        user_message = transport.calls[0]["messages"][0]["content"]
        assert "...(truncated)" in user_message
        assert len(user_message) < 3000
        assert "PREVIOUS INPUT VALUES:\n  (none)" in user_message

    async def test_system_context_mentions_tools_and_state(self, services, transport):
        services.atoms.create("objective", "learn rust")
        services.pinned.pin("notes", "theme", "dark")
        context = ToolContext("notes", tools=[ToolDef("save", "Save a note", {"note": "string"})])
        loop = _loop(services, tool_context=context)

        system = loop.build_system_context()

        assert "- save: Save a note (args: { note: string })" in system
        assert "objective: \"learn rust\"" in system
        assert "PINNED STATE" in system
        assert "theme: \"dark\"" in system

    async def test_api_tools_put_builtins_first(self, services):
        loop = ReasoningLoop(services, "p", tools=[ToolDef("respond", "shadow"), ToolDef("extra", "Extra")])
        names = [t["name"] for t in loop.api_tools()]

        assert names[:2] == ["respond", RESHAPE_TOOL]
        assert names.count("respond") == 1
        assert names[-1] == "extra"


# =============================================================================
# Dispatch
# =============================================================================

class TestDispatch:
    async def test_precedence(self, services):
        calls = []
        context = ToolContext(
            "unit",
            tools=[ToolDef("shared"), ToolDef("list_atoms")],
            dispatch=lambda name, args: calls.append(("parent", name)) or "from parent",
        )
        local = [
            ToolDef("shared", handler=lambda args: calls.append(("local", "shared"))),
            ToolDef("only_local", handler=lambda args: calls.append(("local", "only_local")) or {"n": 1}),
        ]

        async def fallback(name, args):
            calls.append(("fallback", name))
            return "fallback"

        dispatcher = build_dispatcher(services, context, local_tools=local, on_tool_call=fallback)

        assert await dispatcher.dispatch("shared", {}) == "from parent"
        assert await dispatcher.dispatch("only_local", {}) == {"n": 1}
        assert await dispatcher.dispatch("anything", {}) == "fallback"
        assert await dispatcher.dispatch("list_atoms", {}) == "No atoms"
        assert calls == [("parent", "shared"), ("local", "only_local"), ("fallback", "anything")]

        routes = [e.response["route"] for e in services.transcript.by_source("dispatch:unit")]
        assert routes == ["parent", "local", "on_tool_call", "builtin"]

    async def test_unhandled_tool_returns_none(self, services):
        dispatcher = build_dispatcher(services, None, component_id="lonely")

        assert await dispatcher.dispatch("mystery", {"a": 1}) is None
        entry = services.transcript.by_source("dispatch:lonely")[0]
        assert entry.response["route"] == "unhandled"

    async def test_builtin_atoms_and_sources(self, services):
        dispatcher = build_dispatcher(services, None, component_id="unit")

        assert await dispatcher.dispatch("write_atom", {"key": "goal", "value": [1, 2]}) == "Atom 'goal' updated"
        assert services.atoms.get("goal").get() == [1, 2]
        assert "[\n  1,\n  2\n]" == await dispatcher.dispatch("read_atom", {"key": "goal"})
        assert await dispatcher.dispatch("read_atom", {"key": "nope"}) == "Atom not found: nope"
        assert await dispatcher.dispatch("list_components", {}) == "No authored components"
        assert await dispatcher.dispatch("read_component_source", {"id": "ghost"}) == "No source found for component: ghost"

    async def test_handler_exception_propagates(self, services):
        def explode(args):
            raise KeyError("missing")

        dispatcher = build_dispatcher(services, None, local_tools=[ToolDef("x", handler=explode)], component_id="u")
        with pytest.raises(KeyError):
            await dispatcher.dispatch("x", {})
        assert services.transcript.by_source("dispatch:u")[0].error is not None
