"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

# Identity used for the visibility check when no acting user is configured.
SYSTEM_USERNAME = "system"


@dataclass(frozen=True)
class RoutingConfig:
    """Routing settings passed explicitly into the router."""

    enabled: bool = False
    acting_username: Optional[str] = None
    delivery_timeout: float = 10.0
    tagging_enabled: bool = True

    @property
    def effective_username(self) -> str:
        return self.acting_username or SYSTEM_USERNAME


def routing_config_from_dict(raw: Mapping[str, Any]) -> RoutingConfig:
    """Build a RoutingConfig from the flat JSON block used in config.json."""

    return RoutingConfig(
        enabled=bool(raw.get("enabled", False)),
        acting_username=raw.get("acting_username") or None,
        delivery_timeout=float(raw.get("delivery_timeout", 10)),
        tagging_enabled=bool(raw.get("tagging_enabled", True)),
    )
