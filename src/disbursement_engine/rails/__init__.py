"""Payment rail protocol and adapters."""

from typing import Callable

from disbursement_engine.errors import ConfigurationError
from disbursement_engine.rails.base import JobInstruction, PaymentRail, RailResult
from disbursement_engine.rails.stub import StubRail

# Adapters selectable by name from settings and the CLI.
RAILS: dict[str, Callable[[], PaymentRail]] = {
    StubRail.rail_name: StubRail,
}


def rail_for(name: str) -> PaymentRail:
    """Build the rail adapter registered under ``name``."""
    try:
        factory = RAILS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown payment rail {name!r}; choose one of {', '.join(sorted(RAILS))}"
        ) from None
    return factory()


__all__ = ["JobInstruction", "PaymentRail", "RAILS", "RailResult", "StubRail", "rail_for"]
