"""
Live role settings.

Pure parsers for the configuration values the role applies without a
restart, plus the ConfigurationSnapshot they populate.
"""

import re
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterable, Optional

# Optional leading marker followed by any number of 'v' characters.
_LOG_VERBOSITY_PATTERN = re.compile(r"^(-?)(v*)$")
_EXEMPT_SEPARATORS = re.compile(r"[,;]")


def parse_log_verbosity(value: Optional[str]) -> Optional[str]:
    """
    Normalise a configured verbosity into a mongod flag.

        ""     -> None
        "v"    -> "-v"
        "-vv"  -> "-vv"
        "vvv"  -> "-vvv"
        "-"    -> "-"
        "x"    -> None
    """
    if not value:
        return None
    match = _LOG_VERBOSITY_PATTERN.fullmatch(value)
    if match is None:
        return None
    marker, _ = match.groups()
    return value if marker else f"-{value}"


def log_level_number(token: Optional[str]) -> int:
    """Numeric mongod log level for a verbosity token ("-vv" -> 2)."""
    return (token or "").count("v")


def parse_recycle_flag(value: Optional[str]) -> bool:
    return (value or "").lower() == "true"


def parse_exempt_settings(value: Optional[str]) -> FrozenSet[str]:
    if not value:
        return frozenset()
    names = (part.strip() for part in _EXEMPT_SEPARATORS.split(value))
    return frozenset(name for name in names if name)


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """Settings the role applies live. Replaced wholesale, never mutated."""
    log_verbosity: Optional[str] = None
    recycle_on_exit: bool = True
    exempt_setting_names: FrozenSet[str] = field(default_factory=frozenset)

    def with_log_verbosity(self, log_verbosity: Optional[str]) -> "ConfigurationSnapshot":
        return replace(self, log_verbosity=log_verbosity)

    def with_recycle_on_exit(self, recycle_on_exit: bool) -> "ConfigurationSnapshot":
        return replace(self, recycle_on_exit=recycle_on_exit)

    def with_exempt_setting_names(self, names: Iterable[str]) -> "ConfigurationSnapshot":
        return replace(self, exempt_setting_names=frozenset(names))

    def is_exempt(self, setting_name: str) -> bool:
        return setting_name in self.exempt_setting_names
