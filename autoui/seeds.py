# autoui/seeds.py
from autoui.runtime import ENTRY_PATH, REGISTRY_PATH, render_registry

MAIN_SEED = '''"""Entry module of the generated UI bundle."""
from .ac._registry import COMPONENTS


def get_component(component_id):
    return COMPONENTS.get(component_id)


def component_ids():
    return sorted(COMPONENTS)
'''

SEED_FILES = {
    ENTRY_PATH: MAIN_SEED,
    REGISTRY_PATH: render_registry([]),
}
