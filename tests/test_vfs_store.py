"""Virtual source store: write-through, change hook and row loading."""

from autoui.durable_store import StoredRow
from autoui.entities import atom_storage_key
from autoui.vfs_store import VirtualSourceStore


class FailingStore:
    async def put(self, path, text):
        raise OSError("read-only")

    async def clear(self):
        pass


async def test_set_writes_through(store):
    changes = []
    vfs = VirtualSourceStore(store, on_change=lambda p, t: changes.append((p, t)))

    await vfs.set("/src/ac/notes.py", "class Component: pass")

    assert vfs.get("/src/ac/notes.py") == "class Component: pass"
    assert vfs.has("/src/ac/notes.py")
    assert changes == [("/src/ac/notes.py", "class Component: pass")]
    assert [r.path for r in store.get_all_sync()] == ["/src/ac/notes.py"]


async def test_last_write_wins(store):
    vfs = VirtualSourceStore(store)
    await vfs.set("/src/a.py", "one")
    await vfs.set("/src/a.py", "two")

    assert vfs.get("/src/a.py") == "two"
    assert [(r.path, r.text) for r in store.get_all_sync()] == [("/src/a.py", "two")]


async def test_persist_failure_keeps_memory_value():
    vfs = VirtualSourceStore(FailingStore())
    await vfs.set("/src/a.py", "x = 1")
    assert vfs.get("/src/a.py") == "x = 1"


def test_load_rows_skips_atoms(store):
    vfs = VirtualSourceStore(store)
    loaded = vfs.load_rows([
        StoredRow("/src/main.py", "import json"),
        StoredRow(atom_storage_key("objective"), '"ship it"'),
        StoredRow("/src/ac/_registry.py", "COMPONENTS = {}"),
    ])

    assert loaded == 2
    assert vfs.list() == ["/src/ac/_registry.py", "/src/main.py"]


async def test_failing_change_hook_does_not_block_write(store):
    def boom(path, text):
        raise RuntimeError("listener bug")

    vfs = VirtualSourceStore(store, on_change=boom)
    await vfs.set("/src/a.py", "x")

    assert vfs.get("/src/a.py") == "x"
    assert [r.path for r in store.get_all_sync()] == ["/src/a.py"]


async def test_clear_wipes_everything(store):
    vfs = VirtualSourceStore(store)
    await vfs.seed({"/src/main.py": "x = 1", "/src/ac/_registry.py": "COMPONENTS = {}"})
    store.put_sync(atom_storage_key("k"), "1")

    await vfs.clear()

    assert vfs.list() == []
    assert store.get_all_sync() == []

