#!/usr/bin/env python3
"""
FSM Codegen: generate a guarded state machine from a TOML or JSON transition table.

The definition lists events, each with its Source states, Destination state
and typed Params. States are derived from those references, sorted by name
and numbered from 0; the first one is the initial state.

Usage:
  fsm_codegen.py --target-file fsm.toml --dest-file fsm_GEN.go
  fsm_codegen.py --target-file fsm.toml --dest-file fsm_gen.py     # Python, from suffix
  fsm_codegen.py --target-file fsm.json --dest-file - --lang dot   # DOT to stdout
  fsm_codegen.py --target-file fsm.toml --gofmt                    # fail without gofmt
  fsm_codegen.py --target-file fsm.toml --no-gofmt                 # skip gofmt

Go output goes through gofmt whenever it is on PATH.
"""

import argparse
import json
import logging
import os
import sys
import tempfile
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fsm_definition import DefinitionError, load_definition
from fsm_render import RENDERERS, detect_lang, generate
from fsm_synth import SynthesisError

logger = logging.getLogger("fsm_codegen")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


@dataclass
class GeneratorConfig:
    """Everything a generation run needs. Passed explicitly, never global."""
    target_file: str = "fsm.toml"
    dest_file: str = "fsm_GEN.go"
    lang: Optional[str] = None
    input_format: Optional[str] = None
    # None: run gofmt if installed
    gofmt: Optional[bool] = None
    verbose: bool = False

    @property
    def resolved_lang(self) -> str:
        return detect_lang(self.dest_file, self.lang)


def configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr, DEBUG when verbose."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        handlers=[handler],
        force=True,
    )


def write_output(path: str, text: str):
    """Write text to path in one step. A failed write leaves path untouched."""
    if path == "-":
        sys.stdout.write(text)
        return

    dest = Path(path)
    fd, tmp = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        # mkstemp creates 0600, give the file the mode open() would
        umask = os.umask(0)
        os.umask(umask)
        os.chmod(tmp, 0o666 & ~umask)
        os.replace(tmp, dest)
    except BaseException:
        os.unlink(tmp)
        raise


def run(config: GeneratorConfig) -> str:
    """Generate code for config.target_file and write it to config.dest_file."""
    lang = config.resolved_lang
    definition = load_definition(config.target_file, config.input_format)
    logger.info(
        "Loaded %s from %s: %d events, %d states",
        definition.name, config.target_file, len(definition.events), len(definition.states),
    )

    text = generate(definition, lang, format_go=config.gofmt)
    write_output(config.dest_file, text)

    if config.dest_file != "-":
        logger.info("Wrote %s (%s)", config.dest_file, lang)
    return text


def config_from_args(argv=None) -> GeneratorConfig:
    parser = argparse.ArgumentParser(
        description="Generate a guarded state machine from a TOML or JSON transition table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Definition (TOML):
  Name = "TrafficLight"
  PackageName = "traffic"
  UseSLog = true

  [Events.start]
  Source = ["idle"]
  Destination = "running"
  Params = [{ Name = "retryCount", Type = "int" }]

Examples:
  %(prog)s --target-file fsm.toml --dest-file fsm_GEN.go
  %(prog)s --target-file fsm.toml --dest-file machine.py
  %(prog)s --target-file fsm.toml --dest-file - --lang dot | dot -Tpng -o fsm.png
        """
    )

    parser.add_argument("--target-file", default="fsm.toml", metavar="FILE",
                        help="FSM definition to generate from (default: fsm.toml)")
    parser.add_argument("--dest-file", default="fsm_GEN.go", metavar="FILE",
                        help="File to write generated code to, or '-' for stdout (default: fsm_GEN.go)")
    parser.add_argument("--lang", choices=sorted(RENDERERS),
                        help="Output language (default: from --dest-file suffix, else go)")
    parser.add_argument("--format", dest="input_format", choices=["toml", "json"],
                        help="Force input format")
    parser.add_argument("--gofmt", action="store_true", default=None,
                        help="Require gofmt for Go output (default: use it when on PATH)")
    parser.add_argument("--no-gofmt", dest="gofmt", action="store_false", default=None,
                        help="Never pipe Go output through gofmt")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    args = parser.parse_args(argv)

    return GeneratorConfig(
        target_file=args.target_file,
        dest_file=args.dest_file,
        lang=args.lang,
        input_format=args.input_format,
        gofmt=args.gofmt,
        verbose=args.verbose,
    )


def main(argv=None):
    config = config_from_args(argv)
    configure_logging(config.verbose)

    try:
        run(config)

    except tomllib.TOMLDecodeError as e:
        print(f"TOML parse error: {e}", file=sys.stderr)
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"JSON parse error: {e}", file=sys.stderr)
        sys.exit(1)
    except DefinitionError as e:
        print(f"Invalid definition: {e}", file=sys.stderr)
        sys.exit(1)
    except SynthesisError as e:
        logger.debug("Synthesis failed", exc_info=True)
        print(f"Cannot generate code: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
