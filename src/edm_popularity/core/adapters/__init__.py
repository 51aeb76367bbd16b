"""Source adapters.

An adapter is an async callable returning an ``AdapterPayload`` (or a mapping
with the same shape). ``ADAPTERS`` maps the names accepted by the pipeline's
``--only`` flag and the ``EDM_ADAPTERS`` variable to the adapters themselves.
"""

from __future__ import annotations

import os
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from ..models import AdapterPayload
from .apple_music_rss import fetch_apple_music_rss
from .sample_seed import fetch_sample_seed

Adapter = Callable[[], Awaitable[Union[AdapterPayload, Mapping[str, Any]]]]

ADAPTERS: dict[str, Adapter] = {
    "sample_seed": fetch_sample_seed,
    "apple_music_rss": fetch_apple_music_rss,
}


def select_adapters(names: Optional[Sequence[str]] = None) -> dict[str, Adapter]:
    """Return the adapters to run, in registry order.

    ``names`` defaults to the comma-separated ``EDM_ADAPTERS`` variable, and
    to every registered adapter when that is unset.
    """
    if names is None:
        configured = os.environ.get("EDM_ADAPTERS", "")
        names = [n.strip() for n in configured.split(",") if n.strip()]
    if not names:
        return dict(ADAPTERS)

    unknown = [n for n in names if n not in ADAPTERS]
    if unknown:
        raise ValueError(f"Unknown adapter(s): {', '.join(unknown)}. Available: {', '.join(ADAPTERS)}")
    return {name: adapter for name, adapter in ADAPTERS.items() if name in names}
