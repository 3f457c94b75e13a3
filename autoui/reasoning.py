# autoui/reasoning.py
"""
Delta-driven multi-turn reasoning for one unit.

    loop = ReasoningLoop(services, "Summarise the objective", tool_context=ctx)
    state = loop.update([objective])   # call on every render
    state.status, state.response

update() schedules a run (debounced by latency class) on the first call and
whenever the dependency list changes. A run is a bounded tool-calling
exchange with the model that ends on one of three conditions:
- a __reshape tool call (terminal; sibling calls of that turn run first)
- a turn with no tool calls at all
- the turn budget is exhausted (the last turn's calls still run once)

respond is not terminal: it only overwrites the latest-response slot.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from autoui.atoms import values_equal
from autoui.base_utils import BaseUtils, safe_json, truncate_text
from autoui.llm_client import content_blocks, extract_text, tool_use_blocks
from autoui.prompts import REASONING_PROMPT, REASONING_USER_MESSAGE
from autoui.runtime import component_path

logger = logging.getLogger("autoui_runtime")

LATENCY_DELAYS: Dict[str, float] = {
    "immediate": 0.0,
    "normal": 0.3,
    "background": 1.0,
}
DEFAULT_LATENCY = "normal"
DEFAULT_MAX_TURNS = 3
MAX_FIRE_COUNT = 10

DEP_CHAR_LIMIT = 2000
SOURCE_FULL_LIMIT = 4000
SOURCE_HEAD_CHARS = 3000
ATOM_SUMMARY_CHARS = 80
LIST_ATOMS_CHARS = 120

RESPOND_TOOL = "respond"
RESHAPE_TOOL = "__reshape"
INTROSPECTION_TOOLS = ("read_atom", "write_atom", "read_component_source", "list_components", "list_atoms")

# sentinel: the run already ended in the error state
_FAILED = object()


class ReasoningStatus(str, Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ReasoningState:
    status: ReasoningStatus = ReasoningStatus.IDLE
    response: Any = None
    error: Optional[str] = None
    turn: int = 0
    max_turns: int = DEFAULT_MAX_TURNS
    status_text: Optional[str] = None
    stale: bool = False


@dataclass
class ToolDef:
    """
    A domain tool: schema maps argument name -> JSON type name, handler is
    an optional callable(args) (sync or async).
    """

    name: str
    description: str = ""
    schema: Optional[Dict[str, Any]] = None
    handler: Optional[Callable[[Any], Any]] = None

    @classmethod
    def coerce(cls, value: Any) -> "ToolDef":
        if isinstance(value, ToolDef):
            return value
        if isinstance(value, dict):
            return cls(
                name=str(value.get("name") or ""),
                description=str(value.get("description") or ""),
                schema=value.get("schema"),
                handler=value.get("handler"),
            )
        raise TypeError(f"Unsupported tool definition: {value!r}")

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "schema": self.schema}

    def to_api(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for key, kind in (self.schema or {}).items():
            properties[key] = kind if isinstance(kind, dict) else {"type": kind}
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": {"type": "object", "properties": properties},
        }

    def prompt_line(self) -> str:
        line = f"- {self.name}: {self.description}"
        if self.schema:
            fields = ", ".join(f"{k}: {v}" for k, v in self.schema.items())
            line += f" (args: {{ {fields} }})"
        return line


@dataclass
class ToolContext:
    """What a unit hands to the reasoning loops running inside it."""

    component_id: str
    tools: List[ToolDef] = field(default_factory=list)
    dispatch: Optional[Callable[[str, Any], Any]] = None
    reshape: Optional[Callable[[str], Any]] = None

    def has_tool(self, name: str) -> bool:
        return any(t.name == name for t in self.tools)


def coerce_tools(tools: Optional[Sequence[Any]]) -> List[ToolDef]:
    return [ToolDef.coerce(t) for t in (tools or [])]


def deps_changed(previous: Optional[List[Any]], current: List[Any]) -> bool:
    if previous is None or len(previous) != len(current):
        return True
    return any(not values_equal(a, b) for a, b in zip(previous, current))


# -----------------------
# API tool definitions
# -----------------------

def respond_tool(response_schema: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "name": RESPOND_TOOL,
        "description": (
            "Provide your response to the component. Call this when you have determined what the "
            "component needs. You can call other tools in the same turn."
        ),
        "input_schema": response_schema or {
            "type": "object",
            "properties": {"content": {"type": "string", "description": "Your response text"}},
            "required": ["content"],
        },
    }


RESHAPE_API_TOOL = {
    "name": RESHAPE_TOOL,
    "description": (
        "Rewrite your own source code to better handle the current situation. TERMINAL: your "
        "component will be replaced. Prefer composing child units for sub-problems."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Why you need to be rewritten and what the new version should handle"},
        },
        "required": ["reason"],
    },
}

INTROSPECTION_API_TOOLS = [
    {
        "name": "read_atom",
        "description": "Read the full current value of a shared state atom by key",
        "input_schema": {
            "type": "object",
            "properties": {"key": {"type": "string", "description": "The atom key to read"}},
            "required": ["key"],
        },
    },
    {
        "name": "write_atom",
        "description": "Write a value to a shared state atom. Creates the atom if it doesn't exist.",
        "input_schema": {
            "type": "object",
            "properties": {
                "key": {"type": "string", "description": "The atom key to write"},
                "value": {"description": "The value to set (any JSON-serializable value)"},
            },
            "required": ["key", "value"],
        },
    },
    {
        "name": "read_component_source",
        "description": "Read the source code of any authored component by its ID",
        "input_schema": {
            "type": "object",
            "properties": {"id": {"type": "string", "description": "The component ID (maps to /src/ac/{id}.py)"}},
            "required": ["id"],
        },
    },
    {
        "name": "list_components",
        "description": "List all authored component IDs currently in the system",
        "input_schema": {"type": "object", "properties": {}},
    },
    {
        "name": "list_atoms",
        "description": "List all shared state atom keys with value summaries",
        "input_schema": {"type": "object", "properties": {}},
    },
]

INTROSPECTION_LINES = [
    "- read_atom: Read the full value of a shared state atom (args: { key: string })",
    "- write_atom: Write a value to a shared state atom (args: { key: string, value: any })",
    "- read_component_source: Read source code of any authored component (args: { id: string })",
    "- list_components: List all authored component IDs",
    "- list_atoms: List all shared state atom keys with value summaries",
]


# -----------------------
# Dispatch routes
# -----------------------

class ToolRoute:
    name = "route"

    def handles(self, tool_name: str) -> bool:
        raise NotImplementedError

    def dispatch(self, tool_name: str, args: Any) -> Any:
        raise NotImplementedError


class TerminalRoute(ToolRoute):
    name = "reshape"

    def __init__(self, tool_context: Optional[ToolContext]):
        self.tool_context = tool_context

    def handles(self, tool_name: str) -> bool:
        return tool_name == RESHAPE_TOOL

    def dispatch(self, tool_name: str, args: Any) -> Any:
        if self.tool_context is None or self.tool_context.reshape is None:
            return None
        reason = (args or {}).get("reason") if isinstance(args, dict) else None
        self.tool_context.reshape(reason or "self-requested")
        return "reshape triggered"


class BuiltinRoute(ToolRoute):
    """Introspection over the shared services: atoms, sources, registry."""

    name = "builtin"

    def __init__(self, services: Any, component_id: str):
        self.services = services
        self.component_id = component_id

    def handles(self, tool_name: str) -> bool:
        return tool_name in INTROSPECTION_TOOLS

    def dispatch(self, tool_name: str, args: Any) -> Any:
        args = args if isinstance(args, dict) else {}
        return getattr(self, f"_{tool_name}")(args)

    def _read_atom(self, args) -> str:
        key = args.get("key")
        atom = self.services.atoms.get(key) if key is not None else None
        if atom is None:
            return f"Atom not found: {key}"
        return safe_json(atom.get(), indent=2)

    def _write_atom(self, args) -> str:
        key = args.get("key")
        if not key:
            return "Error writing atom: missing key"
        self.services.atoms.create(key, None).set(args.get("value"))
        return f"Atom '{key}' updated"

    def _read_component_source(self, args) -> str:
        cid = str(args.get("id") or "")
        source = self.services.vfs.get(component_path(cid)) if cid else None
        return source or f"No source found for component: {cid}"

    def _list_components(self, args) -> str:
        ids = self.services.runtime.components.ids()
        return ", ".join(ids) if ids else "No authored components"

    def _list_atoms(self, args) -> str:
        keys = self.services.atoms.keys()
        if not keys:
            return "No atoms"
        lines = []
        for k in keys:
            summary = truncate_text(safe_json(self.services.atoms.get(k).get()), LIST_ATOMS_CHARS)
            lines.append(f"{k}: {summary}")
        return "\n".join(lines)


class ParentRoute(ToolRoute):
    name = "parent"

    def __init__(self, tool_context: Optional[ToolContext]):
        self.tool_context = tool_context

    def handles(self, tool_name: str) -> bool:
        return (
            self.tool_context is not None
            and self.tool_context.dispatch is not None
            and self.tool_context.has_tool(tool_name)
        )

    def dispatch(self, tool_name: str, args: Any) -> Any:
        return self.tool_context.dispatch(tool_name, args)


class LocalRoute(ToolRoute):
    name = "local"

    def __init__(self, tools: List[ToolDef]):
        self.tools = {t.name: t for t in tools if t.handler is not None}

    def handles(self, tool_name: str) -> bool:
        return tool_name in self.tools

    def dispatch(self, tool_name: str, args: Any) -> Any:
        return self.tools[tool_name].handler(args)


class FallbackRoute(ToolRoute):
    name = "on_tool_call"

    def __init__(self, on_tool_call: Optional[Callable[[str, Any], Any]]):
        self.on_tool_call = on_tool_call

    def handles(self, tool_name: str) -> bool:
        return self.on_tool_call is not None

    def dispatch(self, tool_name: str, args: Any) -> Any:
        return self.on_tool_call(tool_name, args)


class ToolDispatcher:
    """
    Resolves a tool name through an ordered route list and runs it. Every
    dispatch is written to the transcript log tagged with the route.
    Handler exceptions propagate to the caller after being logged.
    """

    def __init__(self, routes: List[ToolRoute], transcript: Any = None, component_id: str = "anonymous"):
        self.routes = routes
        self.transcript = transcript
        self.component_id = component_id

    def route_for(self, tool_name: str) -> Optional[ToolRoute]:
        for route in self.routes:
            if route.handles(tool_name):
                return route
        return None

    def _log(self, tool_name: str, args: Any, route: str, result: Any = None, error: Optional[str] = None) -> None:
        if self.transcript is None:
            return
        self.transcript.push(
            f"dispatch:{self.component_id}",
            response={"tool": tool_name, "args": args, "route": route, "result": result},
            error=error,
        )

    async def dispatch(self, tool_name: str, args: Any) -> Any:
        route = self.route_for(tool_name)
        if route is None:
            logger.warning(f"[reasoning] No handler for tool: {tool_name}")
            self._log(tool_name, args, "unhandled")
            return None
        try:
            result = route.dispatch(tool_name, args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._log(tool_name, args, route.name, error=str(e))
            raise
        self._log(tool_name, args, route.name, result=result)
        return result


def build_dispatcher(
    services: Any,
    tool_context: Optional[ToolContext],
    local_tools: Optional[List[ToolDef]] = None,
    on_tool_call: Optional[Callable[[str, Any], Any]] = None,
    component_id: Optional[str] = None,
) -> ToolDispatcher:
    """Precedence: terminal, builtin, parent, local, fallback."""
    cid = component_id or (tool_context.component_id if tool_context is not None else "anonymous")
    routes: List[ToolRoute] = [
        TerminalRoute(tool_context),
        BuiltinRoute(services, cid),
        ParentRoute(tool_context),
        LocalRoute(list(local_tools or [])),
        FallbackRoute(on_tool_call),
    ]
    return ToolDispatcher(routes, getattr(services, "transcript", None), cid)


# -----------------------
# Reasoning loop
# -----------------------

class ReasoningLoop(BaseUtils):
    def __init__(
        self,
        services: Any,
        prompt: Any,
        *,
        tools: Optional[Sequence[Any]] = None,
        response_schema: Optional[Dict[str, Any]] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        latency: str = DEFAULT_LATENCY,
        debounce: Optional[float] = None,
        component_id: Optional[str] = None,
        tool_context: Optional[ToolContext] = None,
        on_tool_call: Optional[Callable[[str, Any], Any]] = None,
        keep_stale: bool = False,
    ):
        self.services = services
        self.tool_context = tool_context
        self.fire_count = 0
        self._state = ReasoningState(max_turns=max_turns)
        self._listeners: List[Callable[[ReasoningState], None]] = []
        self._deps: Optional[List[Any]] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set = set()
        self._disposed = False
        self._ceiling_warned = False
        self.configure(
            prompt,
            tools=tools,
            response_schema=response_schema,
            max_turns=max_turns,
            latency=latency,
            debounce=debounce,
            component_id=component_id,
            on_tool_call=on_tool_call,
            keep_stale=keep_stale,
        )

    def configure(
        self,
        prompt: Any,
        *,
        tools=None,
        response_schema=None,
        max_turns: int = DEFAULT_MAX_TURNS,
        latency: str = DEFAULT_LATENCY,
        debounce: Optional[float] = None,
        component_id: Optional[str] = None,
        on_tool_call=None,
        keep_stale: bool = False,
    ) -> None:
        """Refresh the options; the next run uses the latest ones."""
        if latency not in LATENCY_DELAYS:
            raise ValueError(f"Unknown latency class '{latency}'. Expected one of {sorted(LATENCY_DELAYS)}")
        self.prompt = prompt
        self.tools = coerce_tools(tools)
        self.response_schema = response_schema
        self.max_turns = max(1, int(max_turns))
        self.latency = latency
        self.debounce = debounce
        self._component_id = component_id
        self.on_tool_call = on_tool_call
        self.keep_stale = keep_stale

    # -----------------------
    # State
    # -----------------------

    @property
    def state(self) -> ReasoningState:
        return self._state

    @property
    def component_id(self) -> str:
        if self._component_id:
            return self._component_id
        if self.tool_context is not None:
            return self.tool_context.component_id
        return "anonymous"

    def subscribe(self, fn: Callable[[ReasoningState], None]) -> Callable[[], None]:
        self._listeners.append(fn)

        def unsubscribe() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return unsubscribe

    def _emit(self, **patch) -> None:
        if self._disposed:
            return
        self._state = replace(self._state, **patch)
        for fn in list(self._listeners):
            try:
                fn(self._state)
            except Exception as e:
                logger.warning(f"[reasoning] listener failed for {self.component_id}: {e}")

    # -----------------------
    # Scheduling
    # -----------------------

    @property
    def delay(self) -> float:
        if self.debounce is not None:
            return max(0.0, float(self.debounce))
        return LATENCY_DELAYS[self.latency]

    def update(self, deps: Sequence[Any]) -> ReasoningState:
        current = list(deps)
        previous = self._deps
        if not deps_changed(previous, current):
            return self._state
        self._deps = current
        if self._disposed:
            return self._state

        if self.fire_count >= MAX_FIRE_COUNT:
            if not self._ceiling_warned:
                self._ceiling_warned = True
                logger.warning(f"[reasoning] {self.component_id}: max fire count ({MAX_FIRE_COUNT}) reached, ignoring further changes")
            return self._state

        self._schedule(previous, current)
        return self._state

    def _schedule(self, previous: Optional[List[Any]], current: List[Any]) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        delay = self.delay
        if delay <= 0:
            self._start(previous, current)
        else:
            self._handle = asyncio.get_running_loop().call_later(delay, self._start, previous, current)

    def _start(self, previous: Optional[List[Any]], current: List[Any]) -> None:
        self._handle = None
        prompt_text = self._begin(previous, current)
        if prompt_text is None:
            return
        task = asyncio.get_running_loop().create_task(self._execute(prompt_text, previous, current))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def busy(self) -> bool:
        return self._handle is not None or bool(self._tasks)

    async def wait_idle(self) -> ReasoningState:
        """Wait until no run is scheduled or in flight."""
        while self.busy and not self._disposed:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self.delay / 4 or 0.01)
        return self._state

    def dispose(self) -> None:
        self._disposed = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._listeners.clear()

    # -----------------------
    # Prompt assembly
    # -----------------------

    def merged_tools(self) -> List[ToolDef]:
        seen = set()
        merged: List[ToolDef] = []
        parent = self.tool_context.tools if self.tool_context is not None else []
        for tool in list(parent) + list(self.tools):
            if tool.name in seen or tool.name in (RESPOND_TOOL, RESHAPE_TOOL) or tool.name in INTROSPECTION_TOOLS:
                continue
            seen.add(tool.name)
            merged.append(tool)
        return merged

    def api_tools(self) -> List[Dict[str, Any]]:
        return [respond_tool(self.response_schema), RESHAPE_API_TOOL, *INTROSPECTION_API_TOOLS] + [
            t.to_api() for t in self.merged_tools()
        ]

    def build_dispatcher(self) -> ToolDispatcher:
        return build_dispatcher(
            self.services,
            self.tool_context,
            local_tools=self.tools,
            on_tool_call=self.on_tool_call,
            component_id=self.component_id,
        )

    def _tool_lines(self) -> str:
        lines = [t.prompt_line() for t in self.merged_tools()]
        props = (self.response_schema or {}).get("properties") if isinstance(self.response_schema, dict) else None
        if props:
            lines.append(f"- respond: Provide your response to the component (fields: {', '.join(props.keys())})")
        else:
            lines.append("- respond: Provide your response to the component (args: { content: string })")
        lines.append(
            "- __reshape: Rewrite your own source code (args: { reason: string }). TERMINAL: your component will be replaced."
        )
        lines.extend(INTROSPECTION_LINES)
        return "\n".join(lines)

    def _source_block(self) -> str:
        source = self.services.vfs.get(component_path(self.component_id))
        if not source:
            return ""
        if len(source) < SOURCE_FULL_LIMIT:
            return f"\n\nYOUR CURRENT SOURCE:\n{source}"
        return (
            f"\n\nYOUR CURRENT SOURCE: ({len(source)} chars, truncated)\n"
            f"{source[:SOURCE_HEAD_CHARS]}\n...(truncated)"
        )

    def _inspection_block(self) -> str:
        block = ""
        atoms = self.services.atoms
        keys = atoms.keys()
        if keys:
            summary = "\n".join(
                f"  {k}: {truncate_text(safe_json(atoms.get(k).get()), ATOM_SUMMARY_CHARS)}" for k in keys
            )
            block += f"\n\nSHARED STATE (atoms):\n{summary}"
        siblings = [cid for cid in self.services.runtime.components.ids() if cid != self.component_id]
        if siblings:
            block += f"\n\nSIBLING COMPONENTS: {', '.join(siblings)}"
        return block

    def build_system_context(self) -> str:
        engagement = getattr(self.services, "engagement", None)
        pinned = getattr(self.services, "pinned", None)
        engagement_text = engagement.describe(self.component_id) if engagement is not None else ""
        pinned_text = pinned.describe(self.component_id) if pinned is not None else ""
        return self.unsafe_string_format(
            REASONING_PROMPT,
            component_id=self.component_id,
            source_block=self._source_block(),
            tool_lines=self._tool_lines(),
            inspection_block=self._inspection_block(),
            engagement_block=f"\n\n{engagement_text}" if engagement_text else "",
            pinned_block=f"\n\n{pinned_text}" if pinned_text else "",
        )

    def _describe_deps(self, deps: Optional[List[Any]]) -> str:
        if not deps:
            return "  (none)"
        return "\n".join(
            f"  [{i}]: {self._json_for_prompt(d, DEP_CHAR_LIMIT)}" for i, d in enumerate(deps)
        )

    def build_user_message(self, prompt_text: str, previous: Optional[List[Any]], current: List[Any]) -> str:
        return self.unsafe_string_format(
            REASONING_USER_MESSAGE,
            prompt=prompt_text,
            current_values=self._describe_deps(current),
            previous_values=self._describe_deps(previous),
        ).strip()

    # -----------------------
    # Run
    # -----------------------

    def _resolve_prompt(self, previous: Optional[List[Any]], current: List[Any]) -> str:
        if callable(self.prompt):
            return self.prompt(previous or [], current) or ""
        return self.prompt or ""

    def _begin(self, previous: Optional[List[Any]], current: List[Any]) -> Optional[str]:
        """Resolve the prompt and count the fire; None means nothing to run."""
        if self._disposed:
            return None
        prompt_text = self._resolve_prompt(previous, current)
        if not prompt_text:
            return None
        self.fire_count += 1
        return prompt_text

    async def run(self, previous: Optional[List[Any]], current: List[Any]) -> ReasoningState:
        """Run one exchange right away, bypassing the debounce."""
        prompt_text = self._begin(previous, current)
        if prompt_text is None:
            return self._state
        return await self._execute(prompt_text, previous, current)

    async def _execute(self, prompt_text: str, previous: Optional[List[Any]], current: List[Any]) -> ReasoningState:
        max_turns = self.max_turns
        if self.keep_stale and self._state.response is not None:
            self._emit(status=ReasoningStatus.REASONING, error=None, turn=0, max_turns=max_turns,
                       status_text="Thinking...", stale=True)
        else:
            self._emit(status=ReasoningStatus.REASONING, response=None, error=None, turn=0,
                       max_turns=max_turns, status_text="Thinking...", stale=False)

        try:
            latest = await self._exchange(prompt_text, previous, current, max_turns)
        except Exception as e:
            logger.warning(f"[reasoning] {self.component_id} failed: {e}")
            self._emit(status=ReasoningStatus.ERROR, error=f"Reasoning error: {e}", status_text=None, stale=False)
            return self._state

        if latest is not _FAILED:
            self._emit(status=ReasoningStatus.DONE, response=latest, status_text=None, stale=False)
        return self._state

    async def _exchange(self, prompt_text: str, previous, current, max_turns: int) -> Any:
        dispatcher = self.build_dispatcher()
        system = self.build_system_context()
        messages: List[Dict[str, Any]] = [
            {"role": "user", "content": self.build_user_message(prompt_text, previous, current)}
        ]
        extras = {"tools": self.api_tools(), "tool_choice": {"type": "auto"}}
        source = f"reasoning:{self.component_id}"
        latest: Any = None

        for turn in range(max_turns):
            label = f" (turn {turn + 1}/{max_turns})" if max_turns > 1 else ""
            self._emit(turn=turn + 1, status_text="Thinking..." if turn == 0 else f"Reasoning...{label}")

            result = await self.services.transport.call(system, messages, extras, source=source)
            if self._disposed:
                return _FAILED
            if result.error:
                self._emit(status=ReasoningStatus.ERROR, error=f"Reasoning error: {result.error}",
                           status_text=None, stale=False)
                return _FAILED

            blocks = content_blocks(result.data)
            calls = tool_use_blocks(result.data)

            reshape_call = next((c for c in calls if c.get("name") == RESHAPE_TOOL), None)
            if reshape_call is not None:
                self._emit(status_text="Reshaping...")
                for call in calls:
                    name = call.get("name")
                    if name == RESPOND_TOOL:
                        latest = call.get("input")
                    elif name != RESHAPE_TOOL:
                        try:
                            await dispatcher.dispatch(name, call.get("input"))
                        except Exception as e:
                            logger.warning(f"[reasoning] {self.component_id}: tool {name} failed before reshape: {e}")
                await dispatcher.dispatch(RESHAPE_TOOL, reshape_call.get("input") or {})
                return latest

            if not calls:
                if latest is None:
                    text = extract_text(result.data)
                    if text:
                        latest = {"content": text}
                break

            tool_results: List[Dict[str, Any]] = []
            for call in calls:
                name = call.get("name")
                if name == RESPOND_TOOL:
                    latest = call.get("input")
                    self._emit(response=latest, status_text=f"Response ready{label}")
                    tool_results.append({"type": "tool_result", "tool_use_id": call.get("id"), "content": "Response received."})
                    continue

                self._emit(status_text=f"Calling {name}...{label}")
                try:
                    res = await dispatcher.dispatch(name, call.get("input"))
                    if res is None:
                        content = "done"
                    elif isinstance(res, str):
                        content = res
                    else:
                        content = safe_json(res)
                    tool_results.append({"type": "tool_result", "tool_use_id": call.get("id"), "content": content})
                except Exception as e:
                    tool_results.append({
                        "type": "tool_result",
                        "tool_use_id": call.get("id"),
                        "content": f"Error: {e}",
                        "is_error": True,
                    })

            if turn >= max_turns - 1:
                break

            messages.append({"role": "assistant", "content": blocks})
            messages.append({"role": "user", "content": tool_results})

        return latest

