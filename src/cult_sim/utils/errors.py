from __future__ import annotations


class CultSimError(Exception):
    """Base class for errors raised by cult_sim."""


class BootstrapError(CultSimError):
    """Persistence could not hydrate agent state; the scheduler must not start."""


class LedgerError(CultSimError):
    """A ledger call reverted or the gateway could not be reached."""


class PlanGenerationError(CultSimError):
    """The language model did not produce a usable plan."""
