import os
from collections.abc import Iterable

from .errors import InvalidConfiguration
from .types import DEFAULT_MIN_KEY_LENGTH, KeyConfig


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    Supports basic KEY=VALUE pairs, ignoring comments and blank lines.
    Surrounding single/double quotes are stripped if present.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key:
                    values[key] = val
    except FileNotFoundError:
        pass
    return values


def _split_tokens(cfg_name: str, token: str, split_commas: bool) -> list[KeyConfig]:
    if split_commas and "," in token:
        parts = [t.strip() for t in token.split(",") if t.strip()]
        return [
            KeyConfig(name=f"{cfg_name}_{idx + 1}", token=part) for idx, part in enumerate(parts)
        ]
    return [KeyConfig(name=cfg_name, token=token.strip())]


def validate_key(token: str, min_length: int = DEFAULT_MIN_KEY_LENGTH) -> str:
    """Return the trimmed token or raise InvalidConfiguration if it cannot be a key."""
    trimmed = token.strip()
    if not trimmed:
        raise InvalidConfiguration("API key is empty")
    if len(trimmed) < min_length:
        raise InvalidConfiguration("API key appears to be too short")
    return trimmed


def load_keyconfigs_from_env(
    names: Iterable[str] | None = None,
    prefix: str | None = None,
    env_path: str | None = None,
    **kwargs,
) -> list[KeyConfig]:
    """Create KeyConfig objects from environment variables.

    - If 'names' is provided, look up each explicit env var name.
    - If 'prefix' is provided, take every env var whose name starts with it.
    - Both may be combined; results are concatenated in that order.
    - If 'env_path' is provided, the .env file augments lookups without touching
        os.environ. Values in the real environment win over the file.

    kwargs keywords:
    to_lower_names: make names lowercase (default False)
    split_commas: split comma-separated values (default True)
    strip_prefix: strip prefix from names (default False)
    """
    file_env = _parse_env_file(env_path) if env_path else {}
    env_map: dict[str, str] = {**file_env, **os.environ}

    results: list[KeyConfig] = []
    split_commas = kwargs.get("split_commas", True)
    to_lower_names = kwargs.get("to_lower_names", False)
    strip_prefix = kwargs.get("strip_prefix", False)

    if names:
        for var in names:
            token = env_map.get(var)
            if not token:
                continue
            cfg_name = var.lower() if to_lower_names else var
            results.extend(_split_tokens(cfg_name, token, split_commas))

    if prefix:
        for var in sorted(env_map):
            token = env_map[var]
            if not (var.startswith(prefix) and token):
                continue
            name_part = var[len(prefix) :] if strip_prefix else var
            cfg_name = name_part.lower() if to_lower_names else name_part
            results.extend(_split_tokens(cfg_name, token, split_commas))

    return results


def load_keyconfigs_from_file(path: str) -> list[KeyConfig]:
    """Read one key per line from a plain text file (the api_key.txt convention).

    Blank lines and lines starting with '#' are skipped. A missing file raises
    InvalidConfiguration so callers can report it the same way as a bad key.
    """
    try:
        with open(path, encoding="utf-8") as f:
            lines = [line.strip() for line in f]
    except FileNotFoundError as e:
        raise InvalidConfiguration(f"key file '{path}' not found") from e
    tokens = [line for line in lines if line and not line.startswith("#")]
    return [KeyConfig(name=f"key_{idx + 1}", token=tok) for idx, tok in enumerate(tokens)]
