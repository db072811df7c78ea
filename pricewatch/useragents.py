"""Desktop user-agent rotation for browser contexts."""

from __future__ import annotations

import random
from pathlib import Path

from pricewatch.logging_config import get_logger


LOGGER = get_logger(__name__)

FALLBACK_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36 Edg/123.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
]


def load_agents(path: str | None) -> list[str]:
    """Read one user agent per line from *path*, falling back to the built-in list."""

    if not path:
        return list(FALLBACK_AGENTS)
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        LOGGER.warning("Failed to load user agents | path=%s | error=%s", path, exc)
        return list(FALLBACK_AGENTS)

    agents = [line.strip() for line in lines if line.strip() and not line.startswith("#")]
    if not agents:
        LOGGER.warning("User agents file is empty, using fallback | path=%s", path)
        return list(FALLBACK_AGENTS)
    return agents


class UserAgentRotator:
    """Random rotation that never hands out the same agent twice in a row."""

    def __init__(self, agents: list[str] | None = None, *, rng: random.Random | None = None) -> None:
        self._agents = list(agents or FALLBACK_AGENTS)
        self._rng = rng or random.Random()
        self._last: str | None = None

    def __len__(self) -> int:
        return len(self._agents)

    def next(self) -> str:
        choices = [agent for agent in self._agents if agent != self._last] or self._agents
        agent = self._rng.choice(choices)
        self._last = agent
        return agent
