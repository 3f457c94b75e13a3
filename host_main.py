# host_main.py
"""
Host process for the self-authoring runtime.

Boot sequence
-------------
1) configuration (.env + optional commentjson file, see autoui/config.py)
2) init_system(): durable store -> atoms -> VFS (or seeds) -> runtime
3) first build of the VFS bundle
4) mount the "root" unit with the persisted objective as its inputs
5) re-render whenever the unit tree invalidates (authoring finished,
   reasoning progressed, an atom changed) until interrupted

Every rendered view is printed as JSON when it differs from the previous one.
"""

import argparse
import asyncio
import json
import logging
from typing import Any, Dict, List

from dotenv import load_dotenv

load_dotenv()

from autoui.abstract_component import AbstractComponent
from autoui.base_utils import safe_json
from autoui.config import ConfigError, load_runtime_config
from autoui.runtime import RuntimeCallbacks
from autoui.system_init import RuntimeServices, init_system

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("autoui_host")

ROOT_COMPONENT_ID = "root"

ROOT_GUIDELINES = """You are the root unit of a tool for making tools.

FIRST VISIT (is_first_visit is true):
Present meaningful invitations, not a blank prompt. Offer starting points such as
"Let's make a tool", "Get something done", "Explore" and "Learn something".
When one is chosen, persist it with set_objective, then decompose it into a
workspace of child units (ctx.child).

RETURNING VISIT (is_first_visit is false):
The user has an objective. Decompose it into a workspace, show progress and let
the user reshape the objective if needed.

DESIGN PRINCIPLES:
- Generative interface: suggest, scaffold, show what's possible.
- Use ctx.use_reasoning to adapt to what the user does.
- Decompose into child units; don't do everything in the root.
- Direct, not chatty.
- Use ctx.track to record which invitations/sections the user interacts with."""


class Host:
    def __init__(self, services: RuntimeServices):
        self.services = services
        self.objective = services.atoms.create("objective", "")
        self.dirty = asyncio.Event()
        self.last_view = None
        self.root = None

    def root_tools(self) -> List[Dict[str, Any]]:
        def set_objective(args):
            value = str((args or {}).get("objective") or "")
            self.objective.set(value)
            return f"Objective set: {value}"

        def report(args):
            logger.info(f"[root] report: {safe_json(args)}")
            return "reported"

        return [
            {
                "name": "set_objective",
                "description": "Set the user's chosen objective. Persists across sessions.",
                "schema": {"objective": "string"},
                "handler": set_objective,
            },
            {
                "name": "report",
                "description": "Report status or observations to the system",
                "schema": {"message": "string", "type": "string"},
                "handler": report,
            },
        ]

    def root_inputs(self) -> Dict[str, Any]:
        objective = self.objective.get() or ""
        return {"objective": objective, "is_first_visit": not objective}

    def render(self) -> None:
        self.root.set_props(self.root_inputs(), self.root_tools(), {})
        view = self.root.render()
        if view != self.last_view:
            self.last_view = view
            print(json.dumps(view, indent=2, ensure_ascii=False, default=repr), flush=True)

    async def run(self, once: bool = False) -> None:
        try:
            await self.services.runtime.build_and_run("boot")
        except Exception as e:
            # a broken tree still mounts; the root re-authors itself
            logger.error(f"[host] initial build failed: {e}")

        self.root = AbstractComponent(ROOT_COMPONENT_ID, self.services, guidelines=ROOT_GUIDELINES)
        self.root.subscribe(self.dirty.set)
        self.objective.subscribe(self.dirty.set)

        try:
            while True:
                self.dirty.clear()
                self.render()
                if once:
                    await self.root.settle()
                    if not self.dirty.is_set():
                        break
                    continue
                await self.dirty.wait()
        finally:
            self.root.unmount()
            await self.services.atoms.flush()


async def amain(args) -> None:
    overrides = {}
    if args.api_mode:
        overrides["api_mode"] = args.api_mode
    config = load_runtime_config(args.config, **overrides)

    callbacks = RuntimeCallbacks(
        on_mode=lambda mode: logger.debug(f"[host] build mode: {mode.value}"),
        on_build_end=lambda n, ms: logger.info(f"[host] build #{n} finished in {ms} ms"),
    )
    services = await init_system(config, callbacks=callbacks)
    if args.reset:
        await services.runtime.reset()
        logger.info("[host] storage cleared; restart to reseed")
        return

    host = Host(services)
    if args.objective is not None:
        host.objective.set(args.objective)
    await host.run(once=args.once)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the self-authoring UI runtime host.")
    parser.add_argument("--config", help="JSON-with-comments config file (overrides AUTOUI_CONFIG_PATH)")
    parser.add_argument("--api-mode", choices=["none", "direct", "relay"], help="override AUTOUI_API_MODE")
    parser.add_argument("--objective", help="set the persisted objective before mounting the root unit")
    parser.add_argument("--once", action="store_true", help="exit once the root unit has settled")
    parser.add_argument("--reset", action="store_true", help="wipe durable storage and exit")
    args = parser.parse_args()

    try:
        asyncio.run(amain(args))
    except ConfigError as e:
        raise SystemExit(f"Configuration error: {e}")
    except KeyboardInterrupt:
        logger.info("[host] interrupted")


if __name__ == "__main__":
    main()
