"""Encode server settings into the ``pg_ctl -o`` option string."""
from __future__ import annotations

import re
from collections.abc import Mapping

_PARAMETER_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def encode_options(port: int, parameters: Mapping[str, str] | None = None) -> str:
    """Return ``-p <port>`` followed by one ``-c key="value"`` per parameter.

    Parameters are emitted in lexicographic key order so identical inputs
    always produce identical command lines.
    """
    options = [f"-p {int(port)}"]
    for key in sorted(parameters or {}):
        if not _PARAMETER_NAME.match(key):
            raise ValueError(f"Invalid server parameter name: {key!r}")
        value = str(parameters[key])  # type: ignore[index]
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        options.append(f'-c {key}="{escaped}"')
    return " ".join(options)


__all__ = ["encode_options"]
