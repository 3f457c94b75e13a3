"""Host loop: boot build, root unit mount and render-on-invalidate."""

import json

from autoui.abstract_component import ComponentPhase
from conftest import authored
from host_main import Host

ROOT = '''
class Component:
    def __init__(self, ctx):
        self.ctx = ctx

    def render(self, inputs, handlers):
        return {"type": "root", "objective": inputs["objective"], "first": inputs["is_first_visit"]}
'''


async def test_run_once_settles_on_authored_root(services, transport, capsys):
    transport.push(authored(ROOT))
    host = Host(services)

    await host.run(once=True)

    assert host.last_view == {"type": "root", "objective": "", "first": True}
    assert host.root.phase is ComponentPhase.READY
    printed = capsys.readouterr().out
    assert json.dumps(host.last_view, indent=2) in printed
    assert services.runtime.build_number == 2


async def test_root_tools(services):
    host = Host(services)
    tools = {t["name"]: t for t in host.root_tools()}

    assert tools["set_objective"]["handler"]({"objective": "learn rust"}) == "Objective set: learn rust"
    assert host.root_inputs() == {"objective": "learn rust", "is_first_visit": False}
    assert tools["report"]["handler"]({"message": "hi", "type": "info"}) == "reported"


async def test_authoring_failure_shows_error_view(services, transport):
    transport.push(authored(""))
    host = Host(services)

    await host.run(once=True)

    assert host.last_view["type"] == "authoring-error"
