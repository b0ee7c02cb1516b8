import os
from collections.abc import Iterable

from .types import CredentialConfig

DEFAULT_KEY_VARS = ("GOOGLE_API_KEY",)


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
                if key.startswith("export "):
                    key = key[len("export ") :].strip()
                val = val.strip().strip('"').strip("'")
                if key:
                    values[key] = val
    except FileNotFoundError:
        # A missing .env is normal in deployed environments
        pass
    return values


def _split_tokens(cfg_name: str, token: str, split_commas: bool) -> list[CredentialConfig]:
    if split_commas and "," in token:
        parts = [t.strip() for t in token.split(",") if t.strip()]
        return [
            CredentialConfig(name=f"{cfg_name}_{idx + 1}", token=part)
            for idx, part in enumerate(parts)
        ]
    token = token.strip()
    return [CredentialConfig(name=cfg_name, token=token)] if token else []


def load_credentials_from_env(
    names: Iterable[str] | None = None,
    prefix: str | None = None,
    env_path: str | None = None,
    **kwargs,
) -> list[CredentialConfig]:
    """Create CredentialConfig objects from environment variables.

    - If 'names' is provided, look up each explicit env var name and create a
        CredentialConfig for each found variable.
    - If 'prefix' is provided, find all env vars whose names start with the prefix
        and create a CredentialConfig per match.
    - If neither is provided, GOOGLE_API_KEY is read.
    - If 'env_path' is provided, variables from the .env file augment lookups
        (without mutating the process environment). Values in the actual
        environment take precedence over the file.

    A value holding several comma-separated keys yields one credential per key,
    named ``<VAR>_1``, ``<VAR>_2``, ... Blank entries are dropped.

    kwargs keywords:
    to_lower_names: make names lowercase (default False)
    split_commas: split comma-separated values (default True)
    strip_prefix: strip prefix from names (default False)
    """
    file_env = _parse_env_file(env_path) if env_path else {}
    env_map: dict[str, str] = {**file_env, **os.environ}

    split_commas = kwargs.get("split_commas", True)
    to_lower_names = kwargs.get("to_lower_names", False)
    strip_prefix = kwargs.get("strip_prefix", False)

    if names is None and prefix is None:
        names = DEFAULT_KEY_VARS

    results: list[CredentialConfig] = []
    if names:
        for var in names:
            token = env_map.get(var)
            if not token:
                continue
            cfg_name = var.lower() if to_lower_names else var
            results.extend(_split_tokens(cfg_name, token, split_commas))

    if prefix:
        for var, token in env_map.items():
            if not (var.startswith(prefix) and token):
                continue
            name_part = var[len(prefix) :] if strip_prefix else var
            cfg_name = name_part.lower() if to_lower_names else name_part
            results.extend(_split_tokens(cfg_name, token, split_commas))

    return results
