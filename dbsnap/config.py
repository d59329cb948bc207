"""
Import configuration.

``ImportOptions`` holds every switch of an import. Options can be passed
as keyword arguments or read from ``DBSNAP_*`` environment variables.
"""

from __future__ import annotations

import os
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .utils.exceptions import ConfigurationError

ENV_PREFIX = "DBSNAP_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ImportOptions(BaseModel):
    """Options of ``import_into`` / ``import_db``. All flags default to False."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    no_transaction: bool = False
    num_kilobytes_per_chunk: int = Field(default=512, gt=0)
    filter: Optional[Callable[..., bool]] = None
    progress_callback: Optional[Callable[..., bool]] = None
    accept_missing_tables: bool = False
    accept_version_diff: bool = False
    accept_name_diff: bool = False
    accept_changed_primary_key: bool = False
    overwrite_values: bool = False
    clear_tables_before_import: bool = False

    @property
    def chunk_size(self) -> int:
        """Bytes read from the source per pull"""
        return self.num_kilobytes_per_chunk * 1024

    @field_validator(
        "no_transaction",
        "accept_missing_tables",
        "accept_version_diff",
        "accept_name_diff",
        "accept_changed_primary_key",
        "overwrite_values",
        "clear_tables_before_import",
        mode="before",
    )
    @classmethod
    def _parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "ImportOptions":
        """Build options from ``DBSNAP_<FIELD>`` variables, then apply ``overrides``."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            if name in ("filter", "progress_callback"):
                continue
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        values.update(overrides)
        return coerce_options(values)


def coerce_options(options: Any = None) -> ImportOptions:
    """Accept ImportOptions, a mapping of option values, or None."""
    if options is None:
        return ImportOptions()
    if isinstance(options, ImportOptions):
        return options
    try:
        return ImportOptions(**dict(options))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid import options: {exc}") from exc
