# autoui/abstract_component.py
"""
Authoring state machine for one generated unit.

    unit = AbstractComponent("weather", services)
    await unit.update({"city": "Oslo"}, tools=[...], handlers={...})
    view = unit.render()

Phases: checking -> authoring -> ready, error reachable from authoring,
checking re-entered from ready on a shape change or an explicit reshape.

A unit is (re)authored only when:
- it has no compiled Component yet (first mount)
- its shape (input keys + coarse kinds, tool set, handler set) changed
  while a compiled version exists
- reshape() was requested (by the model or by code)

Every source write goes through the shared AuthoringQueue and is recorded
in the mutation history before the old source is overwritten.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from autoui.base_utils import BaseUtils
from autoui.llm_client import extract_tool_use
from autoui.mutation_history import MutationOutcome
from autoui.prompts import AUTHORING_PROMPT, AUTHORING_USER_MESSAGE, EXISTING_SOURCE_BLOCK
from autoui.reasoning import (
    ReasoningLoop,
    ReasoningState,
    ToolContext,
    ToolDef,
    build_dispatcher,
    coerce_tools,
)
from autoui.refresh import MountedInstance
from autoui.runtime import COMPONENT_ID_RE, component_path

logger = logging.getLogger("autoui_runtime")

ROLLBACK_CRASH_THRESHOLD = 3
RESHAPE_WARN_THRESHOLD = 3
INPUT_VALUES_CHAR_LIMIT = 4000

WRITE_COMPONENT_TOOL = {
    "name": "write_component",
    "description": "Write the complete component source code",
    "input_schema": {
        "type": "object",
        "properties": {
            "src": {"type": "string", "description": "Complete Python source code for the component module"},
        },
        "required": ["src"],
    },
}


class AuthoringError(RuntimeError):
    pass


class ComponentPhase(str, Enum):
    CHECKING = "checking"
    AUTHORING = "authoring"
    READY = "ready"
    ERROR = "error"


# -----------------------
# Shape
# -----------------------

def value_kind(value: Any) -> str:
    if value is None:
        kind = "null"
    elif isinstance(value, bool):
        kind = "boolean"
    elif isinstance(value, (int, float)):
        kind = "number"
    elif isinstance(value, str):
        kind = "string"
    elif isinstance(value, (list, tuple)):
        kind = "array"
    elif isinstance(value, dict):
        kind = "object"
    elif callable(value):
        kind = "callable"
    else:
        kind = "object"
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        kind += "(empty)"
    return kind


def input_shape(inputs: Optional[Dict[str, Any]]) -> str:
    if not inputs:
        return ""
    return ",".join(f"{k}:{value_kind(inputs[k])}" for k in sorted(inputs))


def tool_shape(tools: Optional[List[ToolDef]]) -> str:
    if not tools:
        return ""
    parts = []
    for t in tools:
        keys = "+".join(sorted((t.schema or {}).keys()))
        parts.append(f"{t.name}({keys})" if keys else t.name)
    return ",".join(sorted(parts))


def handler_shape(handlers: Optional[Dict[str, Any]]) -> str:
    if not handlers:
        return ""
    return ",".join(sorted(handlers.keys()))


@dataclass(frozen=True)
class Shape:
    inputs: str
    tools: str
    handlers: str


@dataclass
class HandlerDef:
    description: str
    fn: Callable[..., Any]

    @classmethod
    def coerce(cls, value: Any) -> "HandlerDef":
        if isinstance(value, HandlerDef):
            return value
        if isinstance(value, dict):
            return cls(description=str(value.get("description") or ""), fn=value.get("fn"))
        if callable(value):
            return cls(description="", fn=value)
        raise TypeError(f"Unsupported handler definition: {value!r}")


# -----------------------
# Crash boundary
# -----------------------

class CrashBoundary:
    """
    Counts consecutive render failures. A successful render resets the
    count; clear_display() (manual retry) hides the error but keeps it.
    """

    def __init__(self) -> None:
        self.count = 0
        self.error: Optional[BaseException] = None
        self.has_error = False

    def record(self, error: BaseException) -> int:
        self.count += 1
        self.error = error
        self.has_error = True
        return self.count

    def clear_display(self) -> None:
        self.has_error = False
        self.error = None

    def succeeded(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.count = 0
        self.clear_display()


# -----------------------
# Context handed to generated code
# -----------------------

class ComponentContext:
    def __init__(self, owner: "AbstractComponent", state: Dict[str, Any]):
        self._owner = owner
        self.state = state

    @property
    def component_id(self) -> str:
        return self._owner.component_id

    @property
    def tools(self) -> List[Dict[str, Any]]:
        return [t.describe() for t in self._owner.tools]

    def use_atom(self, key: str, default: Any = None):
        return self._owner.use_atom(key, default)

    def use_reasoning(self, prompt: Any, deps, key: str = "default", **options) -> ReasoningState:
        return self._owner.use_reasoning(key, prompt, deps, **options)

    def child(self, child_id: str, inputs=None, tools=None, handlers=None, guidelines=None, fallback=None) -> Any:
        unit = self._owner.mount_child(child_id, guidelines=guidelines, fallback=fallback)
        unit.set_props(inputs, tools, handlers)
        return unit.render()

    def call_tool(self, name: str, args: Any = None):
        dispatcher = build_dispatcher(self._owner.services, self._owner.tool_context)
        return dispatcher.dispatch(name, args or {})

    def track(self, section: Optional[str] = None) -> None:
        self._owner.services.engagement.track(self.component_id, section)

    def track_override(self) -> None:
        self._owner.services.engagement.track_override(self.component_id)

    def pin(self, key: str, value: Any) -> None:
        self._owner.services.pinned.pin(self.component_id, key, value)
        self._owner.invalidate()

    def unpin(self, key: str) -> None:
        self._owner.services.pinned.unpin(self.component_id, key)
        self._owner.invalidate()

    def pinned(self, key: str, default: Any = None) -> Any:
        return self._owner.services.pinned.get(self.component_id, key, default)

    def is_pinned(self, key: str) -> bool:
        return self._owner.services.pinned.is_pinned(self.component_id, key)

    def invalidate(self) -> None:
        self._owner.invalidate()


# -----------------------
# AbstractComponent
# -----------------------

class AbstractComponent(BaseUtils):
    def __init__(
        self,
        component_id: str,
        services: Any,
        guidelines: Optional[str] = None,
        fallback: Any = None,
        parent: Optional["AbstractComponent"] = None,
    ):
        if not COMPONENT_ID_RE.match(component_id or ""):
            raise ValueError(f"Invalid component id '{component_id}': must be a Python identifier")
        self.component_id = component_id
        self.services = services
        self.guidelines = guidelines
        self.fallback = fallback
        self.parent = parent

        self.phase = ComponentPhase.CHECKING
        self.error_message = ""
        self.inputs: Dict[str, Any] = {}
        self.tools: List[ToolDef] = []
        self.handlers: Dict[str, HandlerDef] = {}

        self.crash = CrashBoundary()
        self.holder: Optional[MountedInstance] = None
        self.children: Dict[str, "AbstractComponent"] = {}
        self.reasoning: Dict[str, ReasoningLoop] = {}
        self.reshape_count = 0
        self.tool_context = ToolContext(component_id, dispatch=self.dispatch_tool, reshape=self.reshape)

        self._shape: Optional[Shape] = None
        self._reshape_requested = False
        self._authoring_task: Optional[asyncio.Task] = None
        self._rollback_task: Optional[asyncio.Task] = None
        self._atom_unsubs: Dict[str, Callable[[], None]] = {}
        self._listeners: List[Callable[[], None]] = []
        self._mounted_at = time.time()
        self._unmounted = False

        self.services.engagement.ensure(component_id)

    @property
    def vfs_path(self) -> str:
        return component_path(self.component_id)

    @property
    def identity(self) -> str:
        return f"{self.vfs_path} Component"

    # -----------------------
    # Props / shape
    # -----------------------

    def current_shape(self) -> Shape:
        return Shape(input_shape(self.inputs), tool_shape(self.tools), handler_shape(self.handlers))

    def set_props(self, inputs=None, tools=None, handlers=None) -> None:
        self.inputs = dict(inputs or {})
        self.tools = coerce_tools(tools)
        self.handlers = {k: HandlerDef.coerce(v) for k, v in (handlers or {}).items()}
        self.tool_context.tools = list(self.tools)
        self._check()

    async def update(self, inputs=None, tools=None, handlers=None) -> ComponentPhase:
        """One render cycle: store the props, run the authoring check and wait for it."""
        self.set_props(inputs, tools, handlers)
        await self.settle()
        return self.phase

    async def settle(self) -> None:
        while True:
            pending = [t for t in (self._authoring_task, self._rollback_task) if t is not None and not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        for child in list(self.children.values()):
            await child.settle()

    def _decide(self) -> Optional[str]:
        """Returns the mutation trigger when (re)authoring is needed."""
        if self._unmounted or self.phase == ComponentPhase.ERROR:
            return None
        if self._authoring_task is not None and not self._authoring_task.done():
            return None

        compiled = self.services.runtime.components.get(self.component_id)
        current = self.current_shape()
        reshape_requested = self._reshape_requested and compiled is not None
        shape_changed = (
            self.phase == ComponentPhase.READY and self._shape is not None and current != self._shape
        )

        if compiled is not None and not shape_changed and not reshape_requested:
            self._shape = current
            self.phase = ComponentPhase.READY
            return None

        existing = self.services.vfs.get(self.vfs_path) or ""
        if reshape_requested and existing:
            return "re-author:reshape"
        if shape_changed and existing:
            return "re-author:shape-change"
        return "author:first-mount"

    def _check(self) -> None:
        trigger = self._decide()
        if trigger is None:
            return
        self._authoring_task = asyncio.get_running_loop().create_task(self._author(trigger))

    # -----------------------
    # Authoring
    # -----------------------

    def build_authoring_prompt(self, existing_source: Optional[str]) -> str:
        shape_lines = "\n".join(f"- {k}: {value_kind(self.inputs[k])}" for k in sorted(self.inputs)) or "(no inputs)"
        tool_lines = "\n".join(t.prompt_line() for t in self.tools) or "(no tools)"
        handler_lines = "\n".join(
            f"- {name}: {h.description}" if h.description else f"- {name}"
            for name, h in sorted(self.handlers.items())
        ) or "(no handlers)"
        existing_block = ""
        if existing_source:
            existing_block = self.unsafe_string_format(EXISTING_SOURCE_BLOCK, existing_source=existing_source)
        return self.unsafe_string_format(
            AUTHORING_PROMPT,
            component_id=self.component_id,
            input_shape=shape_lines,
            input_values=self._json_for_prompt(self.inputs, INPUT_VALUES_CHAR_LIMIT),
            tool_lines=tool_lines,
            handler_lines=handler_lines,
            guidelines=(self.guidelines or "(none)").strip(),
            existing_source_block=existing_block,
        )

    async def _author(self, trigger: str) -> None:
        self.phase = ComponentPhase.AUTHORING
        self.error_message = ""
        self._reshape_requested = False
        self.invalidate()

        shape = self.current_shape()
        existing = self.services.vfs.get(self.vfs_path) or ""
        is_reauthor = trigger.startswith("re-author:")
        try:
            system = self.build_authoring_prompt(existing if is_reauthor else None)
            result = await self.services.transport.call(
                system,
                [{"role": "user", "content": AUTHORING_USER_MESSAGE}],
                {"tools": [WRITE_COMPONENT_TOOL], "tool_choice": {"type": "tool", "name": "write_component"}},
                source=f"author:{self.component_id}",
            )
            if result.error:
                raise AuthoringError(result.error)

            block = extract_tool_use(result.data, "write_component") or {}
            source = self.clean_triple_backticks(str(block.get("src") or "")).strip()
            if not source:
                raise AuthoringError("Authoring produced empty source")

            await self.services.queue.enqueue(
                lambda: self._commit(trigger, existing, source),
                label=f"author:{self.component_id}",
            )

            self._shape = shape
            self.reshape_count = 0
            self.crash.reset()
            self._dispose_reasoning()
            self.phase = ComponentPhase.READY
            self.color_print(f"[AC:{self.component_id}] {trigger} -> ready ({len(source)} chars)", color="cyan")
        except Exception as e:
            self.phase = ComponentPhase.ERROR
            self.error_message = str(e) or e.__class__.__name__
            logger.error(f"[AC:{self.component_id}] authoring failed ({trigger}): {self.error_message}")
        finally:
            self.invalidate()

        if self.phase == ComponentPhase.READY:
            # props or a reshape request may have arrived while the model was busy
            self._check()

    async def _commit(self, trigger: str, previous: str, source: str) -> None:
        runtime = self.services.runtime
        # compile errors stop here, before anything reaches the tree
        candidate = runtime.candidate_files({self.vfs_path: source})
        await asyncio.to_thread(runtime.build, None, candidate)

        self.services.history.record(self.component_id, trigger, previous, source, MutationOutcome.SWAP)
        await self.services.vfs.set(self.vfs_path, source)
        await runtime.regenerate_registry()
        try:
            await runtime.build_and_run(f"author:{self.component_id}")
        except Exception:
            if previous:
                await self._restore(previous)
            else:
                await self._withdraw()
            raise

    async def _restore(self, source: str) -> None:
        """Put the last good text back after a failed build so the tree stays buildable."""
        await self.services.vfs.set(self.vfs_path, source)
        await self.services.runtime.regenerate_registry()
        try:
            await self.services.runtime.build_and_run(f"restore:{self.component_id}")
        except Exception as e:
            logger.error(f"[AC:{self.component_id}] restore build failed: {e}")

    async def _withdraw(self) -> None:
        """Blank a first-mount unit that failed to load so the registry drops it."""
        await self.services.vfs.set(self.vfs_path, "")
        await self.services.runtime.regenerate_registry()
        try:
            await self.services.runtime.build_and_run(f"withdraw:{self.component_id}")
        except Exception as e:
            logger.error(f"[AC:{self.component_id}] rebuild after withdraw failed: {e}")

    # -----------------------
    # Reshape / retry
    # -----------------------

    def reshape(self, reason: str = "self-requested") -> None:
        self.reshape_count += 1
        if self.reshape_count >= RESHAPE_WARN_THRESHOLD:
            logger.warning(
                f"[AC:{self.component_id}] Frequent reshape requests ({self.reshape_count} since last authoring). "
                f"Consider revising guidelines."
            )
        current = self.services.vfs.get(self.vfs_path) or ""
        if current:
            self.services.history.record(
                self.component_id, f"reshape:{reason}", current, "", MutationOutcome.SWAP
            )
        self._shape = None
        self._reshape_requested = True
        if self.phase != ComponentPhase.AUTHORING:
            self.phase = ComponentPhase.CHECKING
        self._check()
        self.invalidate()

    def retry(self) -> None:
        if self.phase == ComponentPhase.ERROR:
            self.phase = ComponentPhase.CHECKING
            self.error_message = ""
            self._check()
        elif self.crash.has_error:
            self.crash.clear_display()
        self.invalidate()

    # -----------------------
    # Crash handling
    # -----------------------

    def _on_crash(self, error: BaseException) -> None:
        count = self.crash.record(error)
        logger.error(f"[AC:{self.component_id}] Crash #{count}: {error}")
        if count < ROLLBACK_CRASH_THRESHOLD:
            return
        if self._rollback_task is not None and not self._rollback_task.done():
            return
        previous = self.services.history.previous_source(self.component_id)
        if not previous:
            logger.warning(f"[AC:{self.component_id}] No previous source available for rollback")
            return
        logger.warning(f"[AC:{self.component_id}] Rolling back to previous source after {count} crashes")
        self._rollback_task = asyncio.get_running_loop().create_task(self._rollback(count, previous))

    async def _rollback(self, count: int, previous: str) -> None:
        async def op():
            current = self.services.vfs.get(self.vfs_path) or ""
            self.services.history.record(
                self.component_id,
                f"rollback:crash-count-{count}",
                current,
                previous,
                MutationOutcome.ROLLBACK,
            )
            await self.services.vfs.set(self.vfs_path, previous)
            await self.services.runtime.regenerate_registry()
            await self.services.runtime.build_and_run(f"rollback:{self.component_id}")

        try:
            await self.services.queue.enqueue(op, label=f"rollback:{self.component_id}")
            self.crash.reset()
        except Exception as e:
            logger.error(f"[AC:{self.component_id}] Rollback build failed: {e}")
        finally:
            self.invalidate()

    # -----------------------
    # Render
    # -----------------------

    def _handler_fns(self) -> Dict[str, Callable[..., Any]]:
        def wrap(name):
            def call(*args, **kwargs):
                handler = self.handlers.get(name)
                if handler is None or handler.fn is None:
                    logger.warning(f"[AC:{self.component_id}] No handler: {name}")
                    return None
                return handler.fn(*args, **kwargs)
            return call

        return {name: wrap(name) for name in self.handlers}

    def _build_instance(self, definition: Any, state: Dict[str, Any]) -> Any:
        return definition(ComponentContext(self, state))

    def _instance_for(self, compiled: Any) -> Any:
        if self.holder is None:
            self.holder = MountedInstance(self.identity, compiled, self._build_instance)
            self.services.refresh.track(self.identity, self.holder)
        elif self.holder.definition is not compiled:
            self.services.refresh.reconcile(self.holder, compiled)
        if self.holder.instance is None:
            raise AuthoringError(f"Component {self.component_id} could not be constructed")
        return self.holder.instance

    def _error_view(self) -> Dict[str, Any]:
        return {"type": "authoring-error", "component": self.component_id, "message": self.error_message, "retry": True}

    def _crash_view(self) -> Dict[str, Any]:
        return {
            "type": "crash",
            "component": self.component_id,
            "message": str(self.crash.error) if self.crash.error else "Unknown error",
            "crash_count": self.crash.count,
            "rolling_back": self.crash.count >= ROLLBACK_CRASH_THRESHOLD,
            "retry": True,
        }

    def _loading_view(self) -> Any:
        if self.fallback is not None:
            return self.fallback
        text = f"Authoring {self.component_id}..." if self.phase == ComponentPhase.AUTHORING else "Loading..."
        return {"type": "loading", "component": self.component_id, "text": text}

    def render(self) -> Any:
        if self.phase == ComponentPhase.ERROR:
            return self._error_view()
        compiled = self.services.runtime.components.get(self.component_id)
        if self.phase in (ComponentPhase.CHECKING, ComponentPhase.AUTHORING) or compiled is None:
            return self._loading_view()
        if self.crash.has_error:
            return self._crash_view()
        try:
            instance = self._instance_for(compiled)
            view = instance.render(self.inputs, self._handler_fns())
        except Exception as e:
            self._on_crash(e)
            return self._crash_view()
        self.crash.succeeded()
        return view

    # -----------------------
    # Services for the context
    # -----------------------

    def use_atom(self, key: str, default: Any = None):
        atom = self.services.atoms.create(key, default)
        if key not in self._atom_unsubs:
            self._atom_unsubs[key] = atom.subscribe(self.invalidate)
        return atom

    def use_reasoning(self, key: str, prompt: Any, deps, **options) -> ReasoningState:
        loop = self.reasoning.get(key)
        if loop is None:
            loop = ReasoningLoop(self.services, prompt, tool_context=self.tool_context, **options)
            loop.subscribe(lambda _state: self.invalidate())
            self.reasoning[key] = loop
        else:
            loop.configure(prompt, **options)
        return loop.update(deps)

    def dispatch_tool(self, name: str, args: Any) -> Any:
        tool = next((t for t in self.tools if t.name == name), None)
        if tool is not None and tool.handler is not None:
            return tool.handler(args)
        logger.warning(f"[AC:{self.component_id}] No handler for tool: {name}")
        return None

    def mount_child(self, child_id: str, guidelines: Optional[str] = None, fallback: Any = None) -> "AbstractComponent":
        unit = self.children.get(child_id)
        if unit is None:
            unit = AbstractComponent(child_id, self.services, guidelines=guidelines, fallback=fallback, parent=self)
            self.children[child_id] = unit
        else:
            unit.guidelines = guidelines if guidelines is not None else unit.guidelines
        return unit

    # -----------------------
    # Invalidation / lifecycle
    # -----------------------

    def subscribe(self, fn: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(fn)

        def unsubscribe() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return unsubscribe

    def invalidate(self) -> None:
        if self._unmounted:
            return
        for fn in list(self._listeners):
            try:
                fn()
            except Exception as e:
                logger.warning(f"[AC:{self.component_id}] invalidate listener failed: {e}")
        if self.parent is not None:
            self.parent.invalidate()

    def _dispose_reasoning(self) -> None:
        for loop in self.reasoning.values():
            loop.dispose()
        self.reasoning = {}

    def unmount(self) -> None:
        for child in list(self.children.values()):
            child.unmount()
        self.children = {}
        self._dispose_reasoning()
        for unsub in self._atom_unsubs.values():
            unsub()
        self._atom_unsubs = {}
        if self.holder is not None:
            self.services.refresh.untrack(self.identity, self.holder)
            self.holder = None
        self.services.engagement.add_dwell(self.component_id, (time.time() - self._mounted_at) * 1000.0)
        self._listeners = []
        self._unmounted = True
