import importlib.util

import pytest

from fsm_definition import parse_definition
from fsm_render import generate


@pytest.fixture
def start_stop():
    """Two states, idle and running, one event each way."""
    return parse_definition({
        "Name": "Machine",
        "PackageName": "machine",
        "Events": {
            "start": {"Source": ["idle"], "Destination": "running"},
            "stop": {"Source": ["running"], "Destination": "idle"},
        },
    })


@pytest.fixture
def with_params():
    return parse_definition({
        "Name": "TrafficLight",
        "PackageName": "traffic",
        "Imports": ["time"],
        "UseSLog": True,
        "Events": {
            "start": {
                "Source": ["idle"],
                "Destination": "running",
                "Params": [
                    {"Name": "retryCount", "Type": "int"},
                    {"Name": "reason", "Type": "str"},
                ],
            },
            "pause": {"Source": ["running"], "Destination": "paused"},
            "resume": {"Source": ["paused"], "Destination": "running"},
            "stop": {"Source": ["running", "paused"], "Destination": "idle"},
        },
    })


@pytest.fixture
def load_generated(tmp_path):
    """Generate Python for a definition and import it as a module."""
    def load(definition, module_name="generated_fsm"):
        path = tmp_path / f"{module_name}.py"
        path.write_text(generate(definition, "python"), encoding="utf-8")
        spec = importlib.util.spec_from_file_location(module_name, path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return load
