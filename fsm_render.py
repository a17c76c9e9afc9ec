"""
FSM Render: print a synthesized Document as source text.

Targets:
  go      Go source, the state type is an iota enum sized to the state count
  python  Python module with IntEnum states and a guarded machine class
  dot     Graphviz DOT view of the transition table

generate() is the whole pipeline: synthesize, render, then check the text is
well-formed (ast.parse for Python, gofmt for Go when it is installed). It
either returns the complete document or raises.
"""

import ast
import keyword
import logging
import re
import shutil
import subprocess
from typing import Optional

from fsm_definition import Definition
from fsm_synth import (
    Constructor,
    Document,
    Header,
    LookupTable,
    MachineType,
    SynthesisError,
    Transition,
    synthesize,
)

logger = logging.getLogger(__name__)

BANNER = "Code generated by fsm-codegen. DO NOT EDIT."

GO_KEYWORDS = frozenset("""
    break case chan const continue default defer else fallthrough for func go
    goto if import interface map package range return select struct switch type var
""".split())

GO_RECEIVER = "fsm"
GO_BASE_IMPORTS = ("errors", "fmt")
GO_LOGGING_IMPORT = "log/slog"
# Package-level names every generated Go file declares or imports
GO_FILE_NAMES = frozenset({
    "errors", "fmt", "slog", "State", "Event", "StateNames", "ErrInvalidTransition",
})
# Parameters with these names would shadow what the method body refers to
GO_RESERVED_PARAMS = GO_FILE_NAMES | {GO_RECEIVER}
GO_BRACKETS = {")": "(", "]": "[", "}": "{"}
GO_TYPE_FORBIDDEN = ("\n", "\r", ";", '"', "`", "//", "/*")

PY_RECEIVER = "self"
PY_MODULE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
PY_MODULE_LEVEL_NAMES = frozenset({
    "State", "Event", "InvalidTransitionError", "STATE_NAMES", "STATE_BITS",
    "EVENT_BITS", "enum", "logging", "logger", "annotations",
})
PY_RESERVED_PARAMS = PY_MODULE_LEVEL_NAMES | {PY_RECEIVER}

INVALID_TRANSITION = "transition not valid from current state"


class FormatterNotFound(RuntimeError):
    """The external formatter requested for the output is not installed."""


def _check_unique(names: list[str], where: str):
    seen = set()
    for name in names:
        if name in seen:
            raise SynthesisError(f"{where} declares {name!r} more than once")
        seen.add(name)


# ---------------------------------------------------------------------------
# Go
# ---------------------------------------------------------------------------

def go_method_name(event: str) -> str:
    return event[0].upper() + event[1:]


def go_hook_name(event: str) -> str:
    return "On" + go_method_name(event)


def _go_identifier(name: str, what: str) -> str:
    if name in GO_KEYWORDS:
        raise SynthesisError(f"{what} {name!r} is a Go keyword")
    return name


def go_package_name(path: str) -> str:
    """The name an import path is referred to by, e.g. "gopkg.in/yaml.v3" is yaml."""
    return path.rsplit("/", 1)[-1].split(".", 1)[0]


def _go_type(type_ref: str, param: str) -> str:
    """Reject type text that would break out of a parameter list."""
    for token in GO_TYPE_FORBIDDEN:
        if token in type_ref:
            raise SynthesisError(f"Type of param {param!r} contains {token!r}: {type_ref!r}")

    stack = []
    for ch in type_ref:
        if ch in "([{":
            stack.append(ch)
        elif ch in GO_BRACKETS:
            if not stack or stack.pop() != GO_BRACKETS[ch]:
                raise SynthesisError(f"Type of param {param!r} has unbalanced {ch!r}: {type_ref!r}")
    if stack:
        raise SynthesisError(f"Type of param {param!r} has unclosed {stack[-1]!r}: {type_ref!r}")
    return type_ref


def _go_signature(params, reserved=GO_RESERVED_PARAMS) -> str:
    parts = []
    for p in params:
        if p.name in reserved:
            raise SynthesisError(f"Param name {p.name!r} is reserved in generated Go")
        parts.append(f"{_go_identifier(p.name, 'Param name')} {_go_type(p.type, p.name)}")
    return ", ".join(parts)


def _go_imports(header: Header) -> list[str]:
    imports = list(GO_BASE_IMPORTS)
    if header.use_logging:
        imports.append(GO_LOGGING_IMPORT)
    for imprt in header.imports:
        if imprt.split() != [imprt] or any(ch in imprt for ch in '"\\'):
            raise SynthesisError(f"Import {imprt!r} is not a Go import path")
        if imprt not in imports:
            imports.append(imprt)
    return imports


def _go_reserved_names(doc: Document) -> frozenset:
    """Names a parameter or the machine type would shadow or redeclare."""
    names = set(GO_RESERVED_PARAMS)
    names.update(go_package_name(imprt) for imprt in _go_imports(doc.header))
    names.update(m.symbol for m in doc.states.members)
    names.update(m.symbol for m in doc.constructor.events)
    return frozenset(names)


def _go_header(lines: list[str], header: Header):
    imports = _go_imports(header)

    lines.append(f"package {_go_identifier(header.package, 'Package name')}")
    lines.append("")
    lines.append("import (")
    for imprt in imports:
        lines.append(f'\t"{imprt}"')
    lines.append(")")


def _go_enum(lines: list[str], type_name: str, width: int, members):
    lines.append(f"type {type_name} uint{width}")
    lines.append("")
    lines.append("const (")
    for member in members:
        if member.ordinal == 0:
            lines.append(f"\t{member.symbol} {type_name} = iota")
        else:
            lines.append(f"\t{member.symbol}")
    lines.append(")")


def _go_constructor(lines: list[str], ctor: Constructor):
    _go_enum(lines, "Event", ctor.event_width, ctor.events)
    lines.append("")
    lines.append(f"// New{ctor.machine} returns a {ctor.machine} in its initial state, {ctor.initial.symbol}.")
    lines.append(f"func New{ctor.machine}() *{ctor.machine} {{")
    lines.append(f"\treturn &{ctor.machine}{{State: {ctor.initial.symbol}}}")
    lines.append("}")


def _go_machine_type(lines: list[str], machine_type: MachineType, reserved=GO_RESERVED_PARAMS):
    _go_identifier(machine_type.machine, "Machine name")
    if machine_type.machine in reserved:
        raise SynthesisError(
            f"Machine name {machine_type.machine!r} clashes with a name the generated Go file declares"
        )
    fields = [("State", "State"), ("LastEvent", "Event")]
    for hook in machine_type.hooks:
        fields.append((go_hook_name(hook.event), f"func({_go_signature(hook.params, reserved)})"))

    methods = [go_method_name(hook.event) for hook in machine_type.hooks]
    _check_unique([name for name, _ in fields] + methods, f"type {machine_type.machine}")

    pad = max(len(name) for name, _ in fields)

    lines.append("// ErrInvalidTransition is returned when an event fires from a state it is not valid in.")
    lines.append(f'var ErrInvalidTransition = errors.New("{INVALID_TRANSITION}")')
    lines.append("")
    lines.append(f"// {machine_type.machine} holds a uint{machine_type.state_width} state ordinal.")
    lines.append("// On* hooks run after their event's transition succeeds.")
    lines.append(f"type {machine_type.machine} struct {{")
    for name, type_ref in fields:
        lines.append(f"\t{name.ljust(pad)} {type_ref}")
    lines.append("}")


def _go_lookup(lines: list[str], lookup: LookupTable):
    keys = [f"{ordinal}:" for ordinal, _ in lookup.entries]
    pad = max(len(k) for k in keys)

    lines.append("// StateNames maps state ordinals to their names.")
    lines.append("var StateNames = map[State]string{")
    for key, (_, name) in zip(keys, lookup.entries):
        lines.append(f'\t{key.ljust(pad)} "{name}",')
    lines.append("}")


def _go_transition(lines: list[str], t: Transition, reserved=GO_RESERVED_PARAMS):
    method = go_method_name(t.event)
    hook = go_hook_name(t.event)
    sources = ", ".join(m.symbol for m in t.sources)
    call_params = ", ".join(p.name for p in t.params)

    lines.append(
        f"// {method} moves {t.machine} to {t.destination.symbol}. Valid from {sources}."
    )
    lines.append(f"func ({GO_RECEIVER} *{t.machine}) {method}({_go_signature(t.params, reserved)}) error {{")
    lines.append(f"\tswitch {GO_RECEIVER}.State {{")
    lines.append(f"\tcase {sources}:")
    lines.append("\tdefault:")
    lines.append(
        f'\t\treturn fmt.Errorf("%w: {t.event} from %s", ErrInvalidTransition, '
        f"StateNames[{GO_RECEIVER}.State])"
    )
    lines.append("\t}")

    if t.use_logging:
        attrs = [f'"Start State", StateNames[{GO_RECEIVER}.State]']
        attrs.extend(f'"{p.name}", {p.name}' for p in t.params)
        lines.append(
            f'\tslog.With({", ".join(attrs)}).Info("Transitioned to {t.destination.name}")'
        )

    lines.append(f"\t{GO_RECEIVER}.State = {t.destination.symbol}")
    lines.append(f"\t{GO_RECEIVER}.LastEvent = {t.symbol}")
    lines.append(f"\tif {GO_RECEIVER}.{hook} != nil {{")
    lines.append(f"\t\t{GO_RECEIVER}.{hook}({call_params})")
    lines.append("\t}")
    lines.append("\treturn nil")
    lines.append("}")


def render_go(doc: Document) -> str:
    """Render a Document as a Go source file."""
    reserved = _go_reserved_names(doc)
    lines = [f"// {BANNER}", ""]

    _go_header(lines, doc.header)
    lines.append("")
    _go_enum(lines, "State", doc.states.width, doc.states.members)
    lines.append("")
    _go_constructor(lines, doc.constructor)
    lines.append("")
    _go_machine_type(lines, doc.machine_type, reserved)
    lines.append("")
    _go_lookup(lines, doc.lookup)

    for transition in doc.transitions:
        lines.append("")
        _go_transition(lines, transition, reserved)

    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Python
# ---------------------------------------------------------------------------

def snake_case(name: str) -> str:
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name)
    return name.lower()


def py_factory_name(machine: str) -> str:
    return "new_" + snake_case(machine)


def py_hook_name(event: str) -> str:
    return "on_" + event


def _py_identifier(name: str, what: str) -> str:
    if keyword.iskeyword(name):
        raise SynthesisError(f"{what} {name!r} is a Python keyword")
    return name


def _py_signature(params) -> str:
    parts = [PY_RECEIVER]
    for p in params:
        if p.name in PY_RESERVED_PARAMS:
            raise SynthesisError(f"Param name {p.name!r} is reserved in generated Python")
        parts.append(f"{_py_identifier(p.name, 'Param name')}: {p.type}")
    return ", ".join(parts)


def _py_header(lines: list[str], header: Header):
    lines.append("from __future__ import annotations")
    lines.append("")
    lines.append("import enum")
    if header.use_logging:
        lines.append("import logging")

    builtin = ("enum", "logging") if header.use_logging else ("enum",)
    user_imports = [i for i in header.imports if i not in builtin]
    if user_imports:
        lines.append("")
        for imprt in user_imports:
            if not PY_MODULE_NAME.match(imprt):
                raise SynthesisError(f"Import {imprt!r} is not a Python module name")
            lines.append(f"import {imprt}")

    if header.use_logging:
        lines.append("")
        lines.append("logger = logging.getLogger(__name__)")


def _py_enum(lines: list[str], type_name: str, bits_name: str, width: int, members):
    lines.append(f"{bits_name} = {width}")
    lines.append("")
    lines.append("")
    lines.append(f"class {type_name}(enum.IntEnum):")
    for member in members:
        if member.ordinal == 0:
            lines.append(f"    {member.symbol} = 0")
        else:
            lines.append(f"    {member.symbol} = enum.auto()")


def _py_constructor(lines: list[str], ctor: Constructor):
    _py_enum(lines, "Event", "EVENT_BITS", ctor.event_width, ctor.events)
    lines.append("")
    lines.append("")
    lines.append(f"def {py_factory_name(ctor.machine)}() -> {ctor.machine}:")
    lines.append(f'    """Return a {ctor.machine} in its initial state, {ctor.initial.name}."""')
    lines.append(f"    return {ctor.machine}(State.{ctor.initial.symbol})")


def _py_transition(lines: list[str], t: Transition):
    hook = py_hook_name(t.event)
    sources = ", ".join(f"State.{m.symbol}" for m in t.sources)
    valid_from = ", ".join(m.name for m in t.sources)
    call_params = ", ".join(p.name for p in t.params)

    lines.append(f"    def {t.event}({_py_signature(t.params)}) -> None:")
    lines.append(f'        """Move to {t.destination.name}. Valid from {valid_from}."""')
    lines.append(f"        if self.state not in ({sources},):")
    lines.append(f"            raise InvalidTransitionError(Event.{t.symbol}, self.state)")

    if t.use_logging:
        params = ", ".join(f'"{p.name}": {p.name}' for p in t.params)
        lines.append("        logger.info(")
        lines.append('            "Transitioned to %s",')
        lines.append(f'            "{t.destination.name}",')
        lines.append("            extra={")
        lines.append('                "fsm_start_state": STATE_NAMES[self.state],')
        lines.append(f'                "fsm_params": {{{params}}},')
        lines.append("            },")
        lines.append("        )")

    lines.append(f"        self.state = State.{t.destination.symbol}")
    lines.append(f"        self.last_event = Event.{t.symbol}")
    lines.append(f"        if self.{hook} is not None:")
    lines.append(f"            self.{hook}({call_params})")


def _py_machine_type(lines: list[str], machine_type: MachineType, initial, transitions):
    machine = _py_identifier(machine_type.machine, "Machine name")
    if machine in PY_MODULE_LEVEL_NAMES:
        raise SynthesisError(f"Machine name {machine!r} clashes with a generated name")

    slots = ["state", "last_event"] + [py_hook_name(h.event) for h in machine_type.hooks]
    methods = [_py_identifier(t.event, "Event name") for t in transitions]
    _check_unique(["__init__", "__slots__"] + slots + methods, f"class {machine}")

    lines.append("class InvalidTransitionError(Exception):")
    lines.append('    """An event fired from a state it is not valid in."""')
    lines.append("")
    lines.append("    def __init__(self, event: Event, state: State) -> None:")
    lines.append("        super().__init__(")
    lines.append(f'            f"{INVALID_TRANSITION}: {{event.name}} from {{STATE_NAMES[state]}}"')
    lines.append("        )")
    lines.append("        self.event = event")
    lines.append("        self.state = state")
    lines.append("")
    lines.append("")
    lines.append(f"class {machine}:")
    lines.append(f'    """State machine holding a uint{machine_type.state_width} state ordinal.')
    lines.append("")
    lines.append("    on_* hooks, when set, are called with the event's parameters after")
    lines.append("    its transition succeeds.")
    lines.append('    """')
    lines.append("")
    lines.append(f"    __slots__ = ({', '.join(repr(s) for s in slots)},)")
    lines.append("")
    lines.append(f"    def __init__(self, state: State = State.{initial.symbol}) -> None:")
    lines.append("        self.state = State(state)")
    lines.append("        self.last_event: Event | None = None")
    for hook in machine_type.hooks:
        lines.append(f"        self.{py_hook_name(hook.event)} = None")

    for transition in transitions:
        lines.append("")
        _py_transition(lines, transition)


def _py_lookup(lines: list[str], lookup: LookupTable):
    lines.append("STATE_NAMES = {")
    for ordinal, name in lookup.entries:
        lines.append(f'    {ordinal}: "{name}",')
    lines.append("}")


def render_python(doc: Document) -> str:
    """Render a Document as a Python module.

    Transition methods live in the machine class body, so they are printed
    inside the machine type block rather than after the lookup table.
    """
    lines = []
    lines.append(f'"""{doc.machine_type.machine} state machine, package {doc.header.package}.')
    lines.append("")
    lines.append(BANNER)
    lines.append('"""')
    lines.append("")

    _py_header(lines, doc.header)
    lines.extend(["", ""])
    _py_enum(lines, "State", "STATE_BITS", doc.states.width, doc.states.members)
    lines.extend(["", ""])
    _py_constructor(lines, doc.constructor)
    lines.extend(["", ""])
    _py_machine_type(lines, doc.machine_type, doc.constructor.initial, doc.transitions)
    lines.extend(["", ""])
    _py_lookup(lines, doc.lookup)

    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# DOT
# ---------------------------------------------------------------------------

def escape_dot(s: str) -> str:
    """Escape string for DOT labels."""
    return s.replace('"', '\\"').replace('<', '\\<').replace('>', '\\>')


def render_dot(doc: Document) -> str:
    """Render the transition table as a Graphviz digraph."""
    machine = doc.machine_type.machine
    lines = []

    lines.append(f"// {BANNER}")
    lines.append(f"digraph {machine} {{")
    lines.append("    rankdir=LR;")
    lines.append("    node [fontname=\"Helvetica\", fontsize=11];")
    lines.append("    edge [fontname=\"Helvetica\", fontsize=10];")
    lines.append("")
    lines.append("    labelloc=\"t\";")
    lines.append(f"    label=\"{escape_dot(machine)}\";")
    lines.append("")

    # Invisible start node for initial state arrow
    initial = doc.constructor.initial.name
    lines.append("    __start [shape=none, label=\"\", width=0, height=0];")
    lines.append(f"    __start -> \"{escape_dot(initial)}\";")
    lines.append("")

    for member in doc.states.members:
        lines.append(f"    \"{escape_dot(member.name)}\" [shape=circle];")
    lines.append("")

    # Group transitions by (from, to) to combine labels
    edge_labels = {}
    for t in doc.transitions:
        label = t.event
        if t.params:
            label = f"{t.event}({', '.join(p.name for p in t.params)})"
        for src in t.sources:
            edge_labels.setdefault((src.name, t.destination.name), []).append(label)

    for (src, tgt), labels in edge_labels.items():
        combined = ", ".join(labels)
        lines.append(f"    \"{escape_dot(src)}\" -> \"{escape_dot(tgt)}\" [label=\"{escape_dot(combined)}\"];")

    lines.append("}")

    return "\n".join(lines) + "\n"


RENDERERS = {
    "go": render_go,
    "python": render_python,
    "dot": render_dot,
}

LANG_SUFFIXES = {
    ".go": "go",
    ".py": "python",
    ".dot": "dot",
    ".gv": "dot",
}


def render(doc: Document, lang: str) -> str:
    try:
        renderer = RENDERERS[lang]
    except KeyError:
        raise ValueError(f"Unknown output language: {lang}") from None
    return renderer(doc)


def gofmt(source: str) -> str:
    """Pipe Go source through gofmt. Rejection means the generator is broken."""
    exe = shutil.which("gofmt")
    if exe is None:
        raise FormatterNotFound("gofmt not found on PATH")

    result = subprocess.run([exe], input=source, capture_output=True, text=True)
    if result.returncode != 0:
        raise SynthesisError(f"gofmt rejected generated code: {result.stderr.strip()}")
    return result.stdout


def check_python(source: str) -> str:
    try:
        ast.parse(source)
    except SyntaxError as e:
        raise SynthesisError(f"Generated Python does not parse: {e}") from e
    return source


def generate(definition: Definition, lang: str = "go", format_go: Optional[bool] = None) -> str:
    """Synthesize, render and check the code for a definition.

    format_go: True requires gofmt, False skips it, None runs it when it is on PATH.
    """
    doc = synthesize(definition)
    text = render(doc, lang)

    if lang == "python":
        text = check_python(text)
    elif lang == "go":
        if format_go is None:
            format_go = shutil.which("gofmt") is not None
            if not format_go:
                logger.debug("gofmt not on PATH, Go output left unformatted")
        if format_go:
            text = gofmt(text)

    logger.debug("Rendered %s as %s (%d bytes)", definition.name, lang, len(text))
    return text


def detect_lang(path: Optional[str], lang: Optional[str] = None) -> str:
    """Pick the output language from an explicit choice or the file suffix."""
    if lang:
        return lang
    if path and path != "-":
        for suffix, name in LANG_SUFFIXES.items():
            if path.endswith(suffix):
                return name
    return "go"
