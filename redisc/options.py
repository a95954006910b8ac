"""Options that configure a pipelined cluster connection."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class PipeOptions:
    """Settings of a pipeline connection."""

    transaction: bool = False
    read_only: bool = False


@dataclass(frozen=True)
class PipeOption:
    """A single change to apply to a :class:`PipeOptions`."""

    setter: Callable[[PipeOptions], None]

    def apply(self, options: PipeOptions) -> PipeOptions:
        """Apply this option to *options* in place and return them."""
        self.setter(options)
        return options


def _set_transaction(options: PipeOptions) -> None:
    options.transaction = True


def _set_read_only(options: PipeOptions) -> None:
    options.read_only = True


def enable_transaction() -> PipeOption:
    """Run each pipeline batch inside MULTI/EXEC."""
    return PipeOption(_set_transaction)


def enable_read_only() -> PipeOption:
    """Allow the pipeline to read from replicas."""
    return PipeOption(_set_read_only)