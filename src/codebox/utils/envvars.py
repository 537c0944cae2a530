"""Resolution of ${VAR} host environment references in configured environment maps."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping

from codebox.utils.logging import get_logger

logger = get_logger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_references(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Resolve ${VAR} environment variable references in a string.

    Args:
        value: String potentially containing ${VAR_NAME} references.
        environ: Lookup table, defaults to the host process environment.

    Returns:
        String with all resolvable references replaced by their values.
        Unresolvable references are left as-is and a warning is logged.
    """
    source = os.environ if environ is None else environ

    def replace_ref(match: re.Match[str]) -> str:
        var_name = match.group(1)
        resolved = source.get(var_name)
        if resolved is None:
            logger.warning("env_var_not_found", var_name=var_name)
            return match.group(0)
        return resolved

    return _ENV_VAR_PATTERN.sub(replace_ref, value)


def resolve_environment(env: Mapping[str, str], environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Resolve references in every value of a language environment map."""
    return {key: resolve_env_references(value, environ) for key, value in env.items()}
