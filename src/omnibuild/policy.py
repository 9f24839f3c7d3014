"""Policy configuration and enforcement helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from omnibuild.errors import PolicyError

NetworkMode = Literal["online", "offline"]


@dataclass(frozen=True, slots=True)
class Policy:
    network_mode: NetworkMode = "online"


def ensure_network_allowed(*, policy: Policy, operation: str, url: str | None = None) -> None:
    if policy.network_mode == "offline":
        context = {"operation": operation}
        if url is not None:
            context["url"] = url
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Warm the source cache first or switch policy.network_mode to 'online'.",
            context=context,
        )
