"""
Validated configuration for ``BatchManager``.
"""

from __future__ import annotations

import os
import typing as t

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from batchmux.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

ENV_PREFIX = "BATCHMUX_"
_ENV_FIELDS = (
    "batch_endpoint",
    "base_url",
    "max_batch_size",
    "batch_window_seconds",
    "max_batch_window_seconds",
    "dedupe",
    "dry_run",
    "request_timeout_seconds",
)


class BatchManagerConfig(BaseModel):
    """
    Options controlling batching windows, transport and deduplication.

    Parameters
    ----------
    batch_endpoint : str
        Path (or absolute URL) of the batch endpoint.
    base_url : str
        Base URL prepended by the HTTP client to relative endpoints.
    max_batch_size : int
        Flush as soon as this many requests were scheduled in one window.
    batch_window_seconds : float
        Default window length for ``normal`` priority requests.
    max_batch_window_seconds : float
        Hard cap on how long a window may stay open, measured from its start.
    dedupe : bool
        Collapse requests with identical fingerprints into one network call.
    dry_run : bool
        Resolve requests with synthetic payloads instead of doing any I/O.
    request_timeout_seconds : float
        Timeout handed to the default HTTP client.
    """

    model_config = ConfigDict(frozen=True)

    batch_endpoint: str = "/api/batch"
    base_url: str = ""
    max_batch_size: int = Field(default=20, gt=0)
    batch_window_seconds: float = Field(default=0.016, gt=0)
    max_batch_window_seconds: float = Field(default=0.1, gt=0)
    dedupe: bool = True
    dry_run: bool = False
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def check_window_bounds(self) -> "BatchManagerConfig":
        if self.max_batch_window_seconds < self.batch_window_seconds:
            raise ValueError(
                "max_batch_window_seconds must be greater than or equal to batch_window_seconds"
            )
        return self

    @classmethod
    def build(cls, **options: t.Any) -> "BatchManagerConfig":
        """
        Build a configuration, mapping validation failures to ``ConfigurationError``.

        Parameters
        ----------
        **options : typing.Any
            Field overrides.

        Returns
        -------
        BatchManagerConfig
            Validated configuration.

        Raises
        ------
        ConfigurationError
            If any option is invalid.
        """
        try:
            return cls(**options)
        except ValidationError as error:
            raise ConfigurationError(str(object=error)) from error

    @classmethod
    def from_env(
        cls,
        *,
        environ: t.Mapping[str, str] | None = None,
        **overrides: t.Any,
    ) -> "BatchManagerConfig":
        """
        Build a configuration from ``BATCHMUX_*`` environment variables.

        Parameters
        ----------
        environ : typing.Mapping[str, str] | None, optional
            Environment mapping, defaults to ``os.environ``.
        **overrides : typing.Any
            Explicit values taking precedence over the environment.

        Returns
        -------
        BatchManagerConfig
            Validated configuration.
        """
        environ = os.environ if environ is None else environ
        options: dict[str, t.Any] = {}
        for field_name in _ENV_FIELDS:
            value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if value is not None and value != "":
                options[field_name] = value
        if options:
            log.debug(event="Loaded configuration from environment", fields=sorted(options))
        options.update({key: value for key, value in overrides.items() if value is not None})
        return cls.build(**options)
