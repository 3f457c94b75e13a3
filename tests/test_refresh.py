"""Hot-swap reconciliation of mounted instances."""

from autoui.refresh import KEPT, REMOUNTED, SWAPPED, MountedInstance, RefreshRuntime, state_signature

IDENTITY = "/src/ac/counter.py Component"


class CounterV1:
    STATE_KEYS = ("count",)

    def __init__(self, state):
        self.state = state
        state.setdefault("count", 0)


class CounterV2:
    STATE_KEYS = ("count",)

    def __init__(self, state):
        self.state = state
        state.setdefault("count", 100)


class CounterWithLabel:
    STATE_KEYS = ("count", "label")

    def __init__(self, state):
        self.state = state
        state.setdefault("count", 0)


class Plain:
    def __init__(self, state):
        self.state = state


class AlsoPlain:
    def __init__(self, state):
        self.state = state


class Exploding:
    STATE_KEYS = ("count",)

    def __init__(self, state):
        raise RuntimeError("constructor failed")


def _build(definition, state):
    return definition(state)


def _mounted(refresh, definition):
    refresh.register(IDENTITY, definition)
    holder = MountedInstance(IDENTITY, definition, _build)
    refresh.track(IDENTITY, holder)
    return holder


def test_state_signature():
    assert state_signature(None) is None
    assert state_signature(Plain) == ()
    assert state_signature(CounterWithLabel) == ("count", "label")


def test_same_definition_is_kept():
    refresh = RefreshRuntime()
    holder = _mounted(refresh, CounterV1)

    report = refresh.perform_refresh()

    assert not report.changed
    assert holder.generation == 1
    assert refresh.reconcile(holder, CounterV1) == KEPT


def test_same_state_keys_swap_and_keep_state():
    refresh = RefreshRuntime()
    holder = _mounted(refresh, CounterV1)
    holder.state["count"] = 7
    state = holder.state

    refresh.begin_generation()
    refresh.register(IDENTITY, CounterV2)
    report = refresh.perform_refresh()

    assert report.swapped == [IDENTITY]
    assert isinstance(holder.instance, CounterV2)
    assert holder.state is state
    assert holder.state["count"] == 7
    assert refresh.last_report is report


def test_classes_without_state_keys_swap():
    refresh = RefreshRuntime()
    holder = _mounted(refresh, Plain)
    holder.state["x"] = 1

    assert refresh.reconcile(holder, AlsoPlain) == SWAPPED
    assert holder.state == {"x": 1}


def test_changed_state_keys_remount_fresh():
    refresh = RefreshRuntime()
    holder = _mounted(refresh, CounterV1)
    holder.state["count"] = 7

    refresh.register(IDENTITY, CounterWithLabel)
    report = refresh.perform_refresh()

    assert report.remounted == [IDENTITY]
    assert isinstance(holder.instance, CounterWithLabel)
    assert holder.state == {"count": 0}


def test_vanished_identity_remounts_empty():
    refresh = RefreshRuntime()
    holder = _mounted(refresh, CounterV1)

    refresh.begin_generation()
    report = refresh.perform_refresh()

    assert report.remounted == [IDENTITY]
    assert holder.definition is None
    assert holder.instance is None


def test_broken_constructor_leaves_holder_empty():
    refresh = RefreshRuntime()
    holder = _mounted(refresh, CounterV1)

    assert refresh.reconcile(holder, Exploding) == REMOUNTED
    assert holder.definition is Exploding
    assert holder.instance is None


def test_untrack():
    refresh = RefreshRuntime()
    holder = _mounted(refresh, CounterV1)
    assert refresh.tracked_count() == 1

    refresh.untrack(IDENTITY, holder)
    assert refresh.tracked_count() == 0
    assert refresh.identities() == [IDENTITY]
