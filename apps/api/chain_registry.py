from __future__ import annotations

import copy
import json
from functools import lru_cache
from pathlib import Path
from typing import Any

from services.common.chain_registry import is_evm_address

from .config import get_settings

EMPTY_REGISTRY: dict[str, Any] = {'version': 0, 'chains': []}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_registry_path(path_value: str) -> Path:
    path = Path(path_value)
    if path.is_absolute():
        return path
    return _repo_root() / path


@lru_cache(maxsize=1)
def _load_chain_registry_cached() -> dict[str, Any]:
    settings = get_settings()
    path = _resolve_registry_path(settings.chain_registry_path)
    if not path.exists():
        return copy.deepcopy(EMPTY_REGISTRY)

    try:
        payload = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError:
        return copy.deepcopy(EMPTY_REGISTRY)
    if not isinstance(payload, dict):
        return copy.deepcopy(EMPTY_REGISTRY)
    if not isinstance(payload.get('chains'), list):
        payload['chains'] = []
    return payload


def load_chain_registry() -> dict[str, Any]:
    return copy.deepcopy(_load_chain_registry_cached())


load_chain_registry.cache_clear = _load_chain_registry_cached.cache_clear  # type: ignore[attr-defined]


def _splitter_addresses(chain: dict[str, Any]) -> list[str]:
    contracts = chain.get('contracts') if isinstance(chain.get('contracts'), dict) else {}
    raw = contracts.get('splitter', [])
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [str(item).strip().lower() for item in raw if is_evm_address(str(item))]


def chains_payload() -> dict[str, Any]:
    """Public view of the registry. RPC endpoints and their env keys are never exposed."""
    data = load_chain_registry()
    chains: list[dict[str, Any]] = []

    for chain in data.get('chains', []):
        if not isinstance(chain, dict):
            continue
        try:
            chain_id = int(chain.get('chain_id', 0))
        except (TypeError, ValueError):
            continue
        if chain_id <= 0:
            continue

        indexer_cfg = chain.get('indexer') if isinstance(chain.get('indexer'), dict) else {}
        chains.append(
            {
                'chain_id': chain_id,
                'chain_key': str(chain.get('chain_key', '')),
                'name': str(chain.get('name', chain_id)),
                'splitter_addresses': _splitter_addresses(chain),
                'start_block': indexer_cfg.get('start_block', 0),
                'confirmation_depth': indexer_cfg.get('confirmation_depth', 0)
            }
        )

    chains.sort(key=lambda item: item['chain_id'])
    return {'chains': chains, 'registry_version': data.get('version', 0)}
