"""Local sample seed adapter.

Reads a bundled JSON file so a fresh install has something to score without
network access. ``SAMPLE_SEED_PATH`` points it at another file.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from ..errors import AdapterError
from ..models import AdapterPayload

DEFAULT_SEED_PATH = Path(__file__).resolve().parent.parent.parent / "data" / "sample_seed.json"


def get_seed_path() -> Path:
    return Path(os.environ.get("SAMPLE_SEED_PATH", str(DEFAULT_SEED_PATH)))


async def fetch_sample_seed() -> AdapterPayload:
    seed_path = get_seed_path()
    try:
        parsed = json.loads(seed_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise AdapterError(f"could not read sample seed {seed_path}: {exc}") from exc
    if not isinstance(parsed, dict):
        raise AdapterError(f"unexpected payload shape in {seed_path}")

    return AdapterPayload.model_validate({
        "sourceName": parsed.get("source") or "sample_seed",
        "sourceUrl": f"local://{seed_path.name}",
        "tracks": parsed.get("tracks") if isinstance(parsed.get("tracks"), list) else [],
    })
