import json

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fsm_definition import (
    WIDTH_LADDER,
    Definition,
    DefinitionError,
    EventDefinition,
    Param,
    derive_states,
    event_symbol,
    load_definition,
    loads_definition,
    parse_definition,
    state_symbol,
    uint_type,
    uint_width,
)


def minimal(**events):
    return {"Name": "Machine", "Events": events}


def test_parse_defaults(start_stop):
    assert start_stop.name == "Machine"
    assert start_stop.package_name == "machine"
    assert start_stop.imports == ()
    assert start_stop.use_logging is False
    assert start_stop.events["start"] == EventDefinition(sources=("idle",), destination="running")


def test_package_name_defaults_to_main():
    definition = parse_definition(minimal(go={"Source": ["a"], "Destination": "b"}))
    assert definition.package_name == "main"


def test_keys_are_case_insensitive():
    definition = parse_definition({
        "name": "Machine",
        "packagename": "pkg",
        "useslog": True,
        "events": {
            "go": {
                "source": ["a"],
                "DESTINATION": "b",
                "params": [{"name": "n", "TYPE": "int"}],
            },
        },
    })
    assert definition.package_name == "pkg"
    assert definition.use_logging is True
    assert definition.events["go"].params == (Param(name="n", type="int"),)


def test_use_logging_alias():
    data = minimal(go={"Source": ["a"], "Destination": "b"})
    data["useLogging"] = True
    assert parse_definition(data).use_logging is True


def test_params_keep_declared_order(with_params):
    params = with_params.events["start"].params
    assert [p.name for p in params] == ["retryCount", "reason"]
    assert [p.type for p in params] == ["int", "str"]


def test_duplicate_sources_collapse():
    definition = parse_definition(
        minimal(go={"Source": ["b", "a", "b", "a"], "Destination": "c"})
    )
    assert definition.events["go"].sources == ("b", "a")


def test_states_are_union_of_references(with_params):
    referenced = set()
    for event in with_params.events.values():
        referenced.add(event.destination)
        referenced.update(event.sources)
    assert set(with_params.states) == referenced
    assert len(with_params.states) == len(referenced)


def test_states_sorted_lexicographically(with_params):
    assert with_params.states == ("idle", "paused", "running")
    assert with_params.states[0] == min(with_params.states)


def test_destination_only_and_source_only_states_are_legal():
    definition = parse_definition(minimal(
        go={"Source": ["start"], "Destination": "end"},
    ))
    assert definition.states == ("end", "start")


def test_sorted_events_ignores_insertion_order():
    definition = parse_definition(minimal(
        stop={"Source": ["b"], "Destination": "a"},
        abort={"Source": ["a", "b"], "Destination": "a"},
        start={"Source": ["a"], "Destination": "b"},
    ))
    assert [name for name, _ in definition.sorted_events()] == ["abort", "start", "stop"]


def test_no_events_is_fatal():
    with pytest.raises(DefinitionError, match="No events"):
        parse_definition({"Name": "Machine", "Events": {}})
    with pytest.raises(DefinitionError, match="No events"):
        parse_definition({"Name": "Machine"})
    with pytest.raises(DefinitionError):
        derive_states({})


def test_derived_states_on_bare_definition():
    definition = Definition(
        name="Machine",
        events={"go": EventDefinition(sources=("z", "a"), destination="m")},
    )
    assert definition.states == ("a", "m", "z")


def test_events_cannot_change_after_states_are_cached():
    events = {"go": EventDefinition(sources=("a",), destination="b")}
    definition = Definition(name="Machine", events=events)
    assert definition.states == ("a", "b")

    with pytest.raises(TypeError):
        definition.events["back"] = EventDefinition(sources=("b",), destination="c")

    # The caller's dict is copied, not shared
    events["back"] = EventDefinition(sources=("b",), destination="c")
    assert list(definition.events) == ["go"]
    assert definition.states == ("a", "b")


@pytest.mark.parametrize("data, message", [
    ({"Events": {"go": {"Source": ["a"], "Destination": "b"}}}, "machine Name"),
    (minimal(go={"Source": ["a"]}), "no Destination"),
    (minimal(go={"Source": [], "Destination": "b"}), "no Source"),
    (minimal(go={"Source": "a", "Destination": "b"}), "must be a list"),
    (minimal(go={"Source": ["in-progress"], "Destination": "b"}), "Invalid source state"),
    (minimal(go={"Source": ["a"], "Destination": "b c"}), "Invalid destination state"),
    (minimal(**{"go now": {"Source": ["a"], "Destination": "b"}}), "Invalid event name"),
    (minimal(go={"Source": ["a"], "Destination": "b", "Params": [{"Name": "n"}]}), "no Type"),
    (
        minimal(go={
            "Source": ["a"],
            "Destination": "b",
            "Params": [{"Name": "n", "Type": "int"}, {"Name": "n", "Type": "string"}],
        }),
        "Duplicate param",
    ),
    (minimal(idle={"Source": ["idle"], "Destination": "IDLE"}), "both map to STATE_IDLE"),
    (
        minimal(
            go={"Source": ["a"], "Destination": "b"},
            GO={"Source": ["b"], "Destination": "a"},
        ),
        "both map to EVENT_GO",
    ),
])
def test_invalid_definitions(data, message):
    with pytest.raises(DefinitionError, match=message):
        parse_definition(data)


def test_reserved_machine_name():
    with pytest.raises(DefinitionError, match="clashes"):
        parse_definition({"Name": "State", "Events": {"go": {"Source": ["a"], "Destination": "b"}}})


def test_use_logging_must_be_boolean():
    data = minimal(go={"Source": ["a"], "Destination": "b"})
    data["UseSLog"] = "yes"
    with pytest.raises(DefinitionError, match="boolean"):
        parse_definition(data)


def test_symbols():
    assert state_symbol("idle") == "STATE_IDLE"
    assert event_symbol("retryLater") == "EVENT_RETRYLATER"


@pytest.mark.parametrize("count, width", [
    (0, 8),
    (1, 8),
    (2, 8),
    (255, 8),
    (256, 8),
    (257, 16),
    (300, 16),
    (65536, 16),
    (65537, 32),
    (2 ** 32, 32),
    (2 ** 32 + 1, 64),
    (2 ** 64, 64),
])
def test_uint_width(count, width):
    assert uint_width(count) == width
    assert uint_type(count) == f"uint{width}"


def test_uint_width_limits():
    with pytest.raises(ValueError):
        uint_width(-1)
    with pytest.raises(ValueError):
        uint_width(2 ** 64 + 1)


@given(st.integers(min_value=0, max_value=2 ** 64))
def test_uint_width_is_minimal(count):
    width = uint_width(count)
    assert 2 ** width > count - 1
    for smaller in WIDTH_LADDER:
        if smaller < width:
            assert not 2 ** smaller > count - 1


def test_load_definition_toml(tmp_path):
    path = tmp_path / "fsm.toml"
    path.write_text(
        'Name = "Machine"\n'
        'PackageName = "machine"\n'
        "\n"
        "[Events.start]\n"
        'Source = ["idle"]\n'
        'Destination = "running"\n'
        'Params = [{ Name = "retryCount", Type = "int" }]\n',
        encoding="utf-8",
    )
    definition = load_definition(path)
    assert definition.states == ("idle", "running")
    assert definition.events["start"].params == (Param(name="retryCount", type="int"),)


def test_load_definition_json(tmp_path):
    path = tmp_path / "fsm.json"
    path.write_text(json.dumps(minimal(go={"Source": ["a"], "Destination": "b"})), encoding="utf-8")
    assert load_definition(path).states == ("a", "b")


def test_load_definition_unknown_suffix(tmp_path):
    path = tmp_path / "fsm.yaml"
    path.write_text("Name: Machine\n", encoding="utf-8")
    with pytest.raises(DefinitionError, match="Unknown input format"):
        load_definition(path)


def test_loads_definition_forced_format():
    text = json.dumps(minimal(go={"Source": ["a"], "Destination": "b"}))
    assert loads_definition(text, "json").name == "Machine"
    with pytest.raises(DefinitionError):
        loads_definition(text, "yaml")
