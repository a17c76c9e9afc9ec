"""
FSM Definition: the transition table a state machine is generated from.

Input documents are TOML or JSON with this shape (keys match case-insensitively):

  Name = "TrafficLight"
  PackageName = "traffic"
  Imports = ["time"]
  UseSLog = true

  [Events.start]
  Source = ["idle"]
  Destination = "running"
  Params = [{ Name = "retryCount", Type = "int" }]

States are never declared. They are the union of every Source and Destination.
"""

import json
import re
import tomllib
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional


IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Names the generated code declares itself
RESERVED_MACHINE_NAMES = ("State", "Event")

WIDTH_LADDER = (8, 16, 32, 64)


class DefinitionError(ValueError):
    """The transition table cannot describe a state machine."""


@dataclass(frozen=True)
class Param:
    name: str
    type: str


@dataclass(frozen=True)
class EventDefinition:
    sources: tuple[str, ...]
    destination: str
    params: tuple[Param, ...] = ()


@dataclass(frozen=True)
class Definition:
    """A validated transition table. Immutable once built."""
    name: str
    events: Mapping[str, EventDefinition] = field(default_factory=dict)
    imports: tuple[str, ...] = ()
    package_name: str = "main"
    use_logging: bool = False

    def __post_init__(self):
        object.__setattr__(self, "events", MappingProxyType(dict(self.events)))

    @cached_property
    def states(self) -> tuple[str, ...]:
        return derive_states(self.events)

    def sorted_events(self) -> list[tuple[str, EventDefinition]]:
        """Events ordered by name. Event ordinals are positions in this list."""
        return [(name, self.events[name]) for name in sorted(self.events)]


def derive_states(events: Mapping[str, EventDefinition]) -> tuple[str, ...]:
    """Return every state referenced by the events, sorted by name."""
    if not events:
        raise DefinitionError("No events defined: cannot derive any states")

    seen = set()
    for event in events.values():
        seen.add(event.destination)
        seen.update(event.sources)

    return tuple(sorted(seen))


def uint_width(count: int) -> int:
    """Smallest unsigned width able to index `count` distinct values."""
    if count < 0:
        raise ValueError(f"Count must be non-negative: {count}")

    highest = max(count - 1, 0)
    for width in WIDTH_LADDER:
        if highest < 2 ** width:
            return width

    raise ValueError(f"Too many values for a 64-bit ordinal: {count}")


def uint_type(count: int) -> str:
    return f"uint{uint_width(count)}"


def state_symbol(state: str) -> str:
    return "STATE_" + state.upper()


def event_symbol(event: str) -> str:
    return "EVENT_" + event.upper()


def _lower_keys(table: dict, where: str) -> dict:
    if not isinstance(table, dict):
        raise DefinitionError(f"{where} must be a table, got {type(table).__name__}")
    return {str(k).lower(): v for k, v in table.items()}


def _identifier(value, what: str) -> str:
    if not isinstance(value, str) or not IDENTIFIER.match(value):
        raise DefinitionError(f"Invalid {what}: {value!r}")
    return value


def _parse_params(raw, event_name: str) -> tuple[Param, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise DefinitionError(f"Params of event {event_name!r} must be a list")

    params = []
    names = set()
    for i, item in enumerate(raw):
        entry = _lower_keys(item, f"Param {i} of event {event_name!r}")
        name = _identifier(entry.get("name"), f"param name in event {event_name!r}")
        type_ref = entry.get("type")
        if not isinstance(type_ref, str) or not type_ref.strip():
            raise DefinitionError(f"Param {name!r} of event {event_name!r} has no Type")
        if name in names:
            raise DefinitionError(f"Duplicate param {name!r} in event {event_name!r}")
        names.add(name)
        params.append(Param(name=name, type=type_ref.strip()))

    return tuple(params)


def _parse_event(event_name: str, raw) -> EventDefinition:
    entry = _lower_keys(raw, f"Event {event_name!r}")

    sources = entry.get("source") or []
    if not isinstance(sources, list):
        raise DefinitionError(f"Source of event {event_name!r} must be a list of states")
    if not sources:
        raise DefinitionError(f"Event {event_name!r} has no Source states")

    # Duplicates are tolerated, the sources are a set
    unique_sources = []
    for src in sources:
        _identifier(src, f"source state in event {event_name!r}")
        if src not in unique_sources:
            unique_sources.append(src)

    destination = entry.get("destination")
    if destination is None:
        raise DefinitionError(f"Event {event_name!r} has no Destination")
    _identifier(destination, f"destination state in event {event_name!r}")

    return EventDefinition(
        sources=tuple(unique_sources),
        destination=destination,
        params=_parse_params(entry.get("params"), event_name),
    )


def _check_unique_symbols(names, symbol, what: str):
    owners = {}
    for name in sorted(names):
        sym = symbol(name)
        if sym in owners:
            raise DefinitionError(
                f"{what} {owners[sym]!r} and {name!r} both map to {sym}"
            )
        owners[sym] = name


def parse_definition(data: dict) -> Definition:
    """Build a validated Definition from a decoded TOML/JSON document."""
    doc = _lower_keys(data, "Definition")

    name = _identifier(doc.get("name"), "machine Name")
    if name in RESERVED_MACHINE_NAMES:
        raise DefinitionError(f"Machine Name {name!r} clashes with a generated type")

    package_name = _identifier(doc.get("packagename", "main"), "PackageName")

    imports = doc.get("imports") or []
    if not isinstance(imports, list) or not all(isinstance(i, str) and i for i in imports):
        raise DefinitionError("Imports must be a list of non-empty strings")

    use_logging = doc.get("useslog", doc.get("uselogging", False))
    if not isinstance(use_logging, bool):
        raise DefinitionError(f"UseSLog must be a boolean, got {use_logging!r}")

    raw_events = doc.get("events") or {}
    if not isinstance(raw_events, dict):
        raise DefinitionError("Events must be a table keyed by event name")

    events = {}
    for event_name, raw in raw_events.items():
        _identifier(event_name, "event name")
        events[event_name] = _parse_event(event_name, raw)

    definition = Definition(
        name=name,
        events=events,
        imports=tuple(imports),
        package_name=package_name,
        use_logging=use_logging,
    )

    # Derivation fails here, before any code is synthesized, if there are no events
    _check_unique_symbols(definition.states, state_symbol, "States")
    _check_unique_symbols(events, event_symbol, "Events")

    return definition


def loads_definition(text: str, fmt: str = "toml") -> Definition:
    """Parse definition text in the given format ("toml" or "json")."""
    if fmt == "toml":
        data = tomllib.loads(text)
    elif fmt == "json":
        data = json.loads(text)
    else:
        raise DefinitionError(f"Unknown definition format: {fmt}")
    return parse_definition(data)


def detect_format(path: Path, fmt: Optional[str] = None) -> str:
    if fmt:
        return fmt
    if path.suffix == ".json":
        return "json"
    if path.suffix == ".toml":
        return "toml"
    raise DefinitionError(f"Unknown input format: {path.suffix or path.name}")


def load_definition(path, fmt: Optional[str] = None) -> Definition:
    """Read and validate a definition file."""
    path = Path(path)
    fmt = detect_format(path, fmt)
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    return loads_definition(text, fmt)
