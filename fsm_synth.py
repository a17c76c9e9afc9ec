"""
FSM Synthesis: turn a Definition into a language-neutral document.

The document is a fixed sequence of blocks:

  1. Header        package and imports
  2. StateEnum     one member per state, sorted by name
  3. Constructor   initial state and the event enumeration
  4. MachineType   the machine struct/class and its hooks
  5. LookupTable   ordinal -> state name
  6. Transition    one per event, sorted by event name

Renderers in fsm_render turn a Document into source text.
"""

import logging
from dataclasses import dataclass

from fsm_definition import (
    Definition,
    EventDefinition,
    Param,
    event_symbol,
    state_symbol,
    uint_width,
)

logger = logging.getLogger(__name__)


class SynthesisError(RuntimeError):
    """Well-formed output could not be produced. Indicates a generator bug."""


@dataclass(frozen=True)
class Member:
    symbol: str
    ordinal: int
    name: str


@dataclass(frozen=True)
class Header:
    """User imports only. Renderers put their logging facility first."""
    package: str
    imports: tuple[str, ...]
    use_logging: bool


@dataclass(frozen=True)
class StateEnum:
    width: int
    members: tuple[Member, ...]


@dataclass(frozen=True)
class Constructor:
    machine: str
    initial: Member
    event_width: int
    events: tuple[Member, ...]


@dataclass(frozen=True)
class Hook:
    event: str
    params: tuple[Param, ...]


@dataclass(frozen=True)
class MachineType:
    machine: str
    state_width: int
    hooks: tuple[Hook, ...]


@dataclass(frozen=True)
class LookupTable:
    entries: tuple[tuple[int, str], ...]


@dataclass(frozen=True)
class Transition:
    machine: str
    event: str
    ordinal: int
    symbol: str
    params: tuple[Param, ...]
    sources: tuple[Member, ...]
    destination: Member
    use_logging: bool


@dataclass(frozen=True)
class Document:
    header: Header
    states: StateEnum
    constructor: Constructor
    machine_type: MachineType
    lookup: LookupTable
    transitions: tuple[Transition, ...]

    def blocks(self) -> tuple:
        """All blocks in emission order."""
        return (
            self.header,
            self.states,
            self.constructor,
            self.machine_type,
            self.lookup,
        ) + self.transitions


def build_header(definition: Definition) -> Header:
    imports = []
    for imprt in definition.imports:
        if imprt not in imports:
            imports.append(imprt)
    return Header(
        package=definition.package_name,
        imports=tuple(imports),
        use_logging=definition.use_logging,
    )


def build_state_enum(states: tuple[str, ...]) -> StateEnum:
    if not states:
        raise SynthesisError("Cannot declare an empty state enumeration")
    members = tuple(
        Member(symbol=state_symbol(s), ordinal=i, name=s) for i, s in enumerate(states)
    )
    return StateEnum(width=uint_width(len(states)), members=members)


def build_constructor(definition: Definition, state_enum: StateEnum) -> Constructor:
    events = tuple(
        Member(symbol=event_symbol(name), ordinal=i, name=name)
        for i, (name, _) in enumerate(definition.sorted_events())
    )
    return Constructor(
        machine=definition.name,
        initial=state_enum.members[0],
        event_width=uint_width(len(events)),
        events=events,
    )


def build_machine_type(definition: Definition, state_enum: StateEnum) -> MachineType:
    hooks = tuple(
        Hook(event=name, params=event.params) for name, event in definition.sorted_events()
    )
    return MachineType(machine=definition.name, state_width=state_enum.width, hooks=hooks)


def build_lookup(state_enum: StateEnum) -> LookupTable:
    return LookupTable(entries=tuple((m.ordinal, m.name) for m in state_enum.members))


def build_transition(
    definition: Definition,
    state_enum: StateEnum,
    ordinal: int,
    event_name: str,
    event: EventDefinition,
) -> Transition:
    """Build the guarded transition for one event."""
    by_name = {m.name: m for m in state_enum.members}

    sources = []
    for src in event.sources:
        # Holds by construction: states are the union of event references
        if src not in by_name:
            raise SynthesisError(f"Event {event_name!r} references unknown state {src!r}")
        sources.append(by_name[src])

    if event.destination not in by_name:
        raise SynthesisError(
            f"Event {event_name!r} references unknown state {event.destination!r}"
        )

    return Transition(
        machine=definition.name,
        event=event_name,
        ordinal=ordinal,
        symbol=event_symbol(event_name),
        params=event.params,
        sources=tuple(sources),
        destination=by_name[event.destination],
        use_logging=definition.use_logging,
    )


def synthesize(definition: Definition) -> Document:
    """Build the complete document for a definition, or raise."""
    states = definition.states
    state_enum = build_state_enum(states)

    transitions = tuple(
        build_transition(definition, state_enum, i, name, event)
        for i, (name, event) in enumerate(definition.sorted_events())
    )

    logger.debug(
        "Synthesized %s: %d states (uint%d), %d events",
        definition.name, len(states), state_enum.width, len(transitions),
    )

    return Document(
        header=build_header(definition),
        states=state_enum,
        constructor=build_constructor(definition, state_enum),
        machine_type=build_machine_type(definition, state_enum),
        lookup=build_lookup(state_enum),
        transitions=transitions,
    )
