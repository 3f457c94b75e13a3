# autoui/runtime.py

import asyncio
import linecache
import logging
import re
import time
import types
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from autoui.base_utils import BaseUtils
from autoui.bundler import BundleResult, CompileError, bundle
from autoui.refresh import RefreshReport, RefreshRuntime
from autoui.vfs_store import VirtualSourceStore

logger = logging.getLogger("autoui_runtime")

ENTRY_PATH = "/src/main.py"
COMPONENT_DIR = "/src/ac"
REGISTRY_PATH = f"{COMPONENT_DIR}/_registry.py"
REGISTRY_HEADER = "# Auto-generated component registry."

COMPONENT_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PASCAL_RE = re.compile(r"^[A-Z][A-Za-z0-9]*$")


class StaleModuleError(RuntimeError):
    pass


class BuildMode(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    IMPORTING = "importing"
    RUNNING = "running"
    ERROR = "error"


@dataclass
class RuntimeCallbacks:
    on_status: Optional[Callable[[str], None]] = None
    on_mode: Optional[Callable[[BuildMode], None]] = None
    on_file_change: Optional[Callable[[str, str], None]] = None
    on_build_start: Optional[Callable[[], None]] = None
    on_build_end: Optional[Callable[[int, float], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None
    on_refresh: Optional[Callable[[RefreshReport], None]] = None


def component_path(component_id: str) -> str:
    return f"{COMPONENT_DIR}/{component_id}.py"


def render_registry(component_ids: List[str]) -> str:
    if not component_ids:
        return f"{REGISTRY_HEADER}\n\nCOMPONENTS = {{}}\n"
    imports = [f"from .{cid} import Component as C{i}" for i, cid in enumerate(component_ids)]
    entries = [f"    {cid!r}: C{i}," for i, cid in enumerate(component_ids)]
    return "\n".join([REGISTRY_HEADER, *imports, "", "COMPONENTS = {", *entries, "}", ""])


def _public_names(module: types.ModuleType) -> Dict[str, Any]:
    names = getattr(module, "__all__", None)
    if names is None:
        names = [n for n in vars(module) if not n.startswith("_")]
    return {n: getattr(module, n) for n in names}


class ComponentRegistry:
    """
    Map component id -> currently loaded Component class. Replaced wholesale
    after every successful build.
    """

    def __init__(self) -> None:
        self._components: Dict[str, Any] = {}

    def replace(self, mapping: Dict[str, Any]) -> None:
        self._components = dict(mapping or {})

    def get(self, component_id: str) -> Any:
        return self._components.get(component_id)

    def ids(self) -> List[str]:
        return sorted(self._components.keys())

    def __contains__(self, component_id: str) -> bool:
        return component_id in self._components

    def __len__(self) -> int:
        return len(self._components)


class BundleHandle:
    """
    One loaded bundle. Modules are executed lazily on first require() and
    cached; once revoked, every require() raises StaleModuleError so code
    from an older build cannot pull modules back in.
    """

    def __init__(self, number: int, sources: Dict[str, str], entry: str, runtime: "Runtime"):
        self.number = number
        self.sources = dict(sources)
        self.entry = entry
        self.runtime = runtime
        self.modules: Dict[str, types.ModuleType] = {}
        self.revoked = False

    def module_name(self, path: str) -> str:
        slug = re.sub(r"[^A-Za-z0-9_]", "_", path.strip("/").rsplit(".py", 1)[0])
        return f"autoui_bundle_{self.number}.{slug}"

    def filename(self, path: str) -> str:
        return f"<bundle {self.number}>{path}"

    def require(self, path: str) -> types.ModuleType:
        if self.revoked:
            raise StaleModuleError(f"Bundle {self.number} was replaced; cannot load {path}")
        cached = self.modules.get(path)
        if cached is not None:
            return cached
        if path not in self.sources:
            raise StaleModuleError(f"Module {path} is not part of bundle {self.number}")

        source = self.sources[path]
        module = types.ModuleType(self.module_name(path))
        module.__file__ = self.filename(path)
        module.__dict__.update({
            "__vfs_path__": path,
            "__require__": self.require,
            "__dispose__": self.runtime.add_disposer,
            "__star__": _public_names,
        })
        # cached before exec so import cycles see the partial module
        self.modules[path] = module
        linecache.cache[module.__file__] = (len(source), None, source.splitlines(True), module.__file__)
        try:
            exec(compile(source, module.__file__, "exec"), module.__dict__)
        except BaseException:
            self.modules.pop(path, None)
            raise
        self._register_classes(path, module)
        return module

    def _register_classes(self, path: str, module: types.ModuleType) -> None:
        refresh = self.runtime.refresh
        if refresh is None:
            return
        for name, value in list(vars(module).items()):
            if isinstance(value, type) and _PASCAL_RE.match(name) and value.__module__ == module.__name__:
                refresh.register(f"{path} {name}", value)

    def revoke(self) -> None:
        self.revoked = True
        for module in self.modules.values():
            linecache.cache.pop(getattr(module, "__file__", ""), None)
        self.modules.clear()


class Runtime(BaseUtils):
    """
    Compile/load pipeline over the virtual source tree.

    build_and_run() is the single orchestration entry point:
      building -> compile -> run teardown handlers -> importing -> load
      -> schedule hot-swap reconciliation -> running
    Any failure sets mode=error, reaches on_error and is re-raised to the
    caller; the previously loaded bundle stays live only if the failure
    happened before its handle was revoked. Writes to the VFS that belong to
    authoring must go through the AuthoringQueue, never around it.
    """

    def __init__(
        self,
        vfs: VirtualSourceStore,
        refresh: Optional[RefreshRuntime] = None,
        callbacks: Optional[RuntimeCallbacks] = None,
        entry_path: str = ENTRY_PATH,
    ):
        self.vfs = vfs
        self.refresh = refresh
        self.callbacks = callbacks or RuntimeCallbacks()
        self.entry_path = entry_path
        self.components = ComponentRegistry()

        self.mode = BuildMode.IDLE
        self.status_text = ""
        self.build_number = 0
        self.last_build_ms: Optional[float] = None
        self.last_error: Optional[BaseException] = None
        self.handle: Optional[BundleHandle] = None
        self.entry_module: Optional[types.ModuleType] = None

        self._disposers: List[Callable[[], Any]] = []
        self._build_lock = asyncio.Lock()
        self._bundle_seq = 0

    # -----------------------
    # Callbacks
    # -----------------------

    def _emit(self, name: str, *args) -> None:
        fn = getattr(self.callbacks, name, None)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception as e:
            logger.warning(f"[runtime] callback {name} failed: {e}")

    def _set_status(self, text: str) -> None:
        self.status_text = text
        self._emit("on_status", text)

    def _set_mode(self, mode: BuildMode) -> None:
        self.mode = mode
        self._emit("on_mode", mode)

    def notify_file_change(self, path: str, text: str) -> None:
        self._emit("on_file_change", path, text)

    # -----------------------
    # Registry module
    # -----------------------

    def component_ids(self, files: Optional[Dict[str, str]] = None) -> List[str]:
        """Unit ids with non-blank source; a blanked file is a withdrawn unit."""
        if files is None:
            files = self.vfs.snapshot()
        ids = []
        prefix = COMPONENT_DIR + "/"
        for path in sorted(files):
            if not path.startswith(prefix) or path == REGISTRY_PATH or not path.endswith(".py"):
                continue
            if not files[path].strip():
                continue
            name = path[len(prefix):-3]
            if "/" in name:
                continue
            if not COMPONENT_ID_RE.match(name):
                logger.warning(f"[runtime] skipping {path}: not a valid component module name")
                continue
            ids.append(name)
        return ids

    async def regenerate_registry(self) -> bool:
        """
        Rewrite the registry module from the component files currently in
        the VFS. Returns True when the text changed.
        """
        text = render_registry(self.component_ids())
        if self.vfs.get(REGISTRY_PATH) == text:
            return False
        await self.vfs.set(REGISTRY_PATH, text)
        return True

    def candidate_files(self, overrides: Dict[str, str]) -> Dict[str, str]:
        """
        The tree as it would look after writing `overrides`, registry module
        included. Nothing is written.
        """
        files = self.vfs.snapshot()
        files.update(overrides)
        files[REGISTRY_PATH] = render_registry(self.component_ids(files))
        return files

    # -----------------------
    # Teardown handlers
    # -----------------------

    def add_disposer(self, fn: Callable[[], Any]) -> Callable[[], Any]:
        self._disposers.append(fn)
        return fn

    def run_disposers(self) -> int:
        disposers, self._disposers = self._disposers, []
        for fn in reversed(disposers):
            try:
                fn()
            except Exception as e:
                logger.warning(f"[runtime] teardown handler failed: {e}")
        return len(disposers)

    # -----------------------
    # Compile / load
    # -----------------------

    def build(self, entry_path: Optional[str] = None, files: Optional[Dict[str, str]] = None) -> BundleResult:
        """Compile only. Raises CompileError; the live bundle is untouched."""
        return bundle(entry_path or self.entry_path, self.vfs.snapshot() if files is None else files)

    def import_bundle(self, code: str, entry: Optional[str] = None) -> types.ModuleType:
        """
        Install bundle text as the live module graph and return the entry
        module. The previous handle is revoked first.
        """
        if self.handle is not None:
            self.handle.revoke()
            self.handle = None
            self.entry_module = None

        self._bundle_seq += 1
        number = self._bundle_seq
        container = types.ModuleType(f"autoui_bundle_{number}")
        exec(compile(code, f"<bundle {number}>", "exec"), container.__dict__)
        sources = getattr(container, "__modules__", None)
        entry = entry or getattr(container, "__entry__", None)
        if not isinstance(sources, dict) or not entry:
            raise CompileError(f"Bundle {number} has no module table or entry")

        if self.refresh is not None:
            self.refresh.begin_generation()
        handle = BundleHandle(number, sources, entry, self)
        self.handle = handle
        self.entry_module = handle.require(entry)
        return self.entry_module

    def _install_components(self) -> None:
        mapping: Dict[str, Any] = {}
        if self.handle is not None and REGISTRY_PATH in self.handle.sources:
            registry_module = self.handle.require(REGISTRY_PATH)
            mapping = dict(getattr(registry_module, "COMPONENTS", {}) or {})
        self.components.replace(mapping)

    def _schedule_refresh(self) -> None:
        if self.refresh is None:
            return
        asyncio.get_running_loop().call_soon(self._refresh_tick)

    def _refresh_tick(self) -> None:
        try:
            report = self.refresh.perform_refresh()
        except Exception as e:
            logger.warning(f"[runtime] hot-swap reconciliation failed: {e}")
            return
        self._emit("on_refresh", report)

    async def build_and_run(self, reason: str = "") -> BundleResult:
        async with self._build_lock:
            try:
                self._set_mode(BuildMode.BUILDING)
                self._set_status(f"Building{f' ({reason})' if reason else ''}...")
                self._emit("on_build_start")

                result = await asyncio.to_thread(self.build, None, self.vfs.snapshot())

                disposed = self.run_disposers()
                if disposed:
                    logger.debug(f"[runtime] ran {disposed} teardown handler(s)")

                self._set_mode(BuildMode.IMPORTING)
                self._set_status("Importing...")
                started = time.perf_counter()
                self.import_bundle(result.code, result.entry)
                self._install_components()
                self._schedule_refresh()

                self.build_number += 1
                self.last_build_ms = round(result.ms + (time.perf_counter() - started) * 1000.0, 2)
                self.last_error = None
                self._set_mode(BuildMode.RUNNING)
                self._set_status(f"Running (build #{self.build_number}, {self.last_build_ms} ms)")
                self._emit("on_build_end", self.build_number, self.last_build_ms)
                self.color_print(
                    f"[runtime] build #{self.build_number} ok: {len(result.modules)} module(s), "
                    f"{len(self.components)} component(s){f' [{reason}]' if reason else ''}",
                    color="green",
                )
                return result
            except Exception as e:
                self.last_error = e
                self._set_mode(BuildMode.ERROR)
                self._set_status(f"Build failed: {e}")
                logger.error(f"[runtime] build failed{f' ({reason})' if reason else ''}: {e}")
                self._emit("on_error", e)
                raise

    async def reset(self) -> None:
        """
        Wipe durable storage and the in-memory tree. The caller reseeds or
        restarts afterwards.
        """
        self.run_disposers()
        if self.handle is not None:
            self.handle.revoke()
            self.handle = None
        self.entry_module = None
        self.components.replace({})
        await self.vfs.clear()
        self._set_mode(BuildMode.IDLE)
        self._set_status("Reset")
