"""TOML configuration for gpt-cli.

Two optional files are read: the global one in the user's config
directory and ``gptcli.toml`` in the working directory. A flag given on
the command line wins over the project file, which wins over the
global file, which wins over built-in defaults.
"""

import argparse
import os
import re
import sys
import tomllib
from pathlib import Path
from typing import Any

from .diffview import MIN_MAX_LINES
from .errors import ConfigError

_UNSET = object()  # argparse default meaning "flag not given"

DEFAULT_MODEL = "gpt-4.1-mini"
PROJECT_CONFIG_NAME = "gptcli.toml"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "temperature": (int, float),
    "max_tokens": int,
    "stream": bool,
    "quiet": bool,
    "role": str,
    "api_key": str,
    "base_url": str,
    "session": str,
    "diff_preview": bool,
    "diff_threshold": int,
    "diff_max_lines": int,
    "log_file": str,
    "color": bool,
}

# Lowest accepted value for integer keys
_MINIMUMS = {
    "max_tokens": 1,
    "diff_threshold": 0,
    "diff_max_lines": MIN_MAX_LINES,
}

_PATH_KEYS = ("session", "log_file")

# Value used for each argparse dest when neither CLI nor config set it
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "temperature": None,
    "max_tokens": None,
    "no_stream": False,
    "quiet": False,
    "role": None,
    "api_key": None,
    "base_url": None,
    "session": None,
    "diff_preview": None,
    "diff_threshold": None,
    "diff_max_lines": None,
    "log_file": None,
    "color": False,
    "no_color": False,
}


# --- Loading ---


def global_config_dir() -> Path:
    """``$XDG_CONFIG_HOME/gpt-cli``, or ``~/.config/gpt-cli`` when unset."""
    base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
    return Path(base) / "gpt-cli"


def _describe(expected: type | tuple[type, ...]) -> str:
    types = expected if isinstance(expected, tuple) else (expected,)
    return " or ".join(t.__name__ for t in types)


def _check_value(key: str, value, source: str) -> None:
    expected = CONFIG_KEYS[key]
    # TOML booleans are ints to isinstance(); only bool keys take them
    wrong_bool = isinstance(value, bool) and expected is not bool
    if wrong_bool or not isinstance(value, expected):
        raise ConfigError(
            f"{source}: {key!r} expected {_describe(expected)}, got {type(value).__name__}"
        )
    minimum = _MINIMUMS.get(key)
    if minimum is not None and value < minimum:
        raise ConfigError(f"{source}: {key!r} must be >= {minimum}")


def _known_keys(raw: dict, source: str) -> dict:
    """Type-check known keys and drop unknown ones with a warning."""
    config = {}
    for key, value in raw.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue
        _check_value(key, value, source)
        config[key] = value
    return config


def _anchor_paths(config: dict, directory: Path) -> None:
    """Make relative file settings relative to the config file, not the cwd."""
    for key in _PATH_KEYS:
        if key not in config:
            continue
        p = Path(config[key]).expanduser()
        if not p.is_absolute():
            p = directory / p
        config[key] = str(p)


def _warn_if_key_in_repo(config: dict, path: Path) -> None:
    """A project file with api_key inside a git checkout is easy to commit."""
    if "api_key" not in config:
        return
    if any((d / ".git").exists() for d in path.parents):
        print(
            f"warning: {path}: api_key is set in a project config inside a git "
            f"repository; prefer the provider's environment variable.",
            file=sys.stderr,
        )


def _read_toml(path: Path) -> dict:
    """Parse and check one config file. A missing file is an empty config."""
    if not path.is_file():
        return {}
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"{path}: cannot read file: {e}") from e
    config = _known_keys(raw, str(path))
    _anchor_paths(config, path.parent)
    return config


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Merged settings from the global and project files.

    Only keys present in a file appear in the result; defaults are
    applied later by apply_config_to_args().
    """
    merged = _read_toml(global_config_dir() / "config.toml")
    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    project = _read_toml(project_path)
    if project:
        _warn_if_key_in_repo(project, project_path)
    merged.update(project)
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill every dest still at _UNSET, first from `config`, then from defaults."""

    def unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # "color" drives both halves of the --color/--no-color pair
    if "color" in config and unset("color") and unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    # "stream = false" is the --no-stream flag
    if "stream" in config and unset("no_stream"):
        args.no_stream = not config["stream"]

    for key, value in config.items():
        if key not in ("color", "stream") and unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if unset(dest):
            setattr(args, dest, default)


_MODEL_LINE = re.compile(r"^[ \t]*#?[ \t]*model[ \t]*=.*$", re.MULTILINE)


def set_default_model(model: str, config_path: Path | None = None) -> Path:
    """Write `model` into the global config, keeping every other line.

    Replaces an existing (or commented-out) ``model = ...`` line, or
    prepends one. Returns the path written. Raises ConfigError on I/O
    failure.
    """
    path = config_path or global_config_dir() / "config.toml"
    line = f"model = {_toml_string(model)}"
    try:
        text = path.read_text(encoding="utf-8") if path.is_file() else ""
        if _MODEL_LINE.search(text):
            text = _MODEL_LINE.sub(lambda _m: line, text, count=1)
        else:
            text = line + "\n" + text
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{path}: cannot write config: {e}") from e
    return path


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def generate_config(project: bool = False) -> str:
    """Template printed by --init-config, with every setting commented out."""
    lines = [
        "# gpt-cli configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/' + PROJECT_CONFIG_NAME if project else '~/.config/gpt-cli/config.toml'}",
        "#",
        "# Every line is commented out; uncomment a setting to use it.",
        "# Command-line flags take precedence over this file.",
        "",
        "# --- Model ---",
        f'# model = "{DEFAULT_MODEL}"',
        '# api_key = "sk-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "# temperature = 0.7",
        "# max_tokens = 4096",
        '# role = "You are a helpful assistant."',
        "",
        "# --- Output ---",
        "# stream = true",
        "# quiet = false",
        "# color = true       # false disables color; leave unset to auto-detect",
        "",
        "# --- Session ---",
        '# session = "project.gptp"',
        '# log_file = "gpt-cli.log"',
        "",
        "# --- Diff preview ---",
        "# diff_preview = true",
        "# diff_threshold = 1",
        "# diff_max_lines = 120",
        "",
    ]
    return "\n".join(lines)
