# autoui/system_init.py

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from autoui.DBConnection_hlpr import DBConnection
from autoui.atoms import AtomRegistry
from autoui.authoring_queue import AuthoringQueue
from autoui.config import RuntimeConfig, load_runtime_config
from autoui.durable_store import DurableStore
from autoui.engagement import EngagementRegistry, PinnedRegistry
from autoui.llm_client import ModelTransport
from autoui.mutation_history import MutationHistory
from autoui.refresh import RefreshRuntime
from autoui.runtime import Runtime, RuntimeCallbacks
from autoui.seeds import SEED_FILES
from autoui.transcript_log import TranscriptLog
from autoui.vfs_store import VirtualSourceStore

logger = logging.getLogger("autoui_runtime")


@dataclass
class RuntimeServices:
    """
    Every process-wide service, constructed once and handed to each unit.
    Tests build their own instance instead of sharing globals.
    """

    config: RuntimeConfig
    store: DurableStore
    vfs: VirtualSourceStore
    atoms: AtomRegistry
    refresh: RefreshRuntime
    runtime: Runtime
    transport: ModelTransport
    transcript: TranscriptLog
    history: MutationHistory
    queue: AuthoringQueue
    engagement: EngagementRegistry
    pinned: PinnedRegistry
    db: Optional[DBConnection] = None


async def init_system(
    config: Optional[RuntimeConfig] = None,
    *,
    store: Optional[DurableStore] = None,
    callbacks: Optional[RuntimeCallbacks] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    seeds: Optional[Dict[str, str]] = None,
) -> RuntimeServices:
    """
    Boot order: durable store -> atom hydration -> VFS rows (or seed files
    when the store holds none) -> runtime -> refresh runtime.
    Does not build; the caller decides when to call build_and_run().
    """
    config = config or load_runtime_config()

    db = None
    if store is None:
        db = DBConnection(config.database_url or None)
        store = DurableStore(db.build_db_session_factory())

    atoms = AtomRegistry()
    hydrated = await atoms.hydrate(store)

    vfs = VirtualSourceStore(store)
    loaded = vfs.load_rows(await store.get_all())
    if loaded == 0:
        await vfs.seed(dict(seeds if seeds is not None else SEED_FILES))
        logger.info(f"[init] seeded {len(vfs.list())} file(s)")
    else:
        logger.info(f"[init] loaded {loaded} source row(s), {hydrated} atom value(s)")

    refresh = RefreshRuntime()
    runtime = Runtime(vfs, refresh=refresh, callbacks=callbacks)
    vfs.on_change = runtime.notify_file_change

    transcript = TranscriptLog()
    return RuntimeServices(
        config=config,
        store=store,
        vfs=vfs,
        atoms=atoms,
        refresh=refresh,
        runtime=runtime,
        transport=ModelTransport(config, transcript, http_client=http_client),
        transcript=transcript,
        history=MutationHistory(),
        queue=AuthoringQueue(),
        engagement=EngagementRegistry(),
        pinned=PinnedRegistry(),
        db=db,
    )
