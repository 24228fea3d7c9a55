"""Logging setup and command-line flag helpers shared by the package."""

from __future__ import annotations

import argparse
import csv
import enum
import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass(frozen=True)
class LoggerOptions:
    """Service identity attached to every log line."""

    service_name: str = ""
    service_version: str = ""


def parse_log_level(log_level):
    """Map a level name to a logging level, defaulting to INFO."""
    level = _LEVELS.get(str(log_level).lower())
    if level is None:
        print(f"Invalid log level '{log_level}' provided. Defaulting to 'info' level.")
        return logging.INFO
    return level


def get_log_level(settings):
    """Read the log level from settings under 'log.level' or log -> level."""
    level = settings.get("log.level")
    if level is None:
        section = settings.get("log")
        if isinstance(section, Mapping):
            level = section.get("level")
    level = "" if level is None else str(level)
    print(f"Log Level is set to: {level}")
    return level


def init_logger(log_level, options):
    """Return a logger writing to stdout, filtered at the given level."""
    level = parse_log_level(log_level)
    logger = logging.getLogger(options.service_name or "inventory-consumer")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    name = options.service_name.replace("%", "%%")
    version = options.service_version.replace("%", "%%")
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "level=%(levelname)s ts=%(asctime)s caller=%(filename)s:%(lineno)d "
        f"service.name={name} service.version={version} msg=%(message)s"
    ))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def flag_names(parser):
    """Return the long flag names registered on an argparse parser."""
    return {
        option[2:]
        for action in parser._actions
        for option in action.option_strings
        if option.startswith("--")
    }


class FlagKind(enum.Enum):
    """How a flag's text is turned into a value."""

    STRING = "string"
    INT = "int"
    BOOL = "bool"
    SLICE = "slice"
    ARRAY = "array"


def _parse_bool(text):
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"invalid boolean value {text!r}")


class _BoundAction(argparse.Action):
    """Writes a parsed flag value onto an attribute of a target object."""

    def __init__(self, option_strings, dest, *, target, attr, kind, **kwargs):
        if kind is FlagKind.BOOL:
            kwargs.setdefault("nargs", "?")
            kwargs.setdefault("const", "true")
        super().__init__(option_strings, dest, **kwargs)
        self.target = target
        self.attr = attr
        self.kind = kind
        self._changed = False

    def _convert(self, text):
        if self.kind is FlagKind.INT:
            return int(text, 0)
        if self.kind is FlagKind.BOOL:
            return _parse_bool(text)
        if self.kind is FlagKind.SLICE:
            return next(csv.reader([text]), [])
        if self.kind is FlagKind.ARRAY:
            return [text]
        return text

    def __call__(self, parser, namespace, values, option_string=None):
        try:
            value = self._convert(values)
        except ValueError as exc:
            parser.error(f"invalid argument {values!r} for {option_string}: {exc}")
        if self.kind in (FlagKind.SLICE, FlagKind.ARRAY):
            current = getattr(self.target, self.attr) if self._changed else []
            value = [*current, *value]
            self._changed = True
        setattr(self.target, self.attr, value)
        setattr(namespace, self.dest, value)


def _flag_prefix(prefix):
    return f"{prefix}." if prefix else ""


def _bind_flag(parser, name, target, attr, kind, help_text):
    default = getattr(target, attr)
    if isinstance(default, list):
        default = list(default)
    parser.add_argument(
        f"--{name}",
        action=_BoundAction,
        target=target,
        attr=attr,
        kind=kind,
        default=default,
        help=help_text.replace("%", "%%"),
    )